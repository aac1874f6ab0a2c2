"""
conftest.py
===========
Session-level pytest configuration.

Custom marks
------------
statistical
    Applied to tests that compare Monte Carlo estimates against closed-form
    expectations.  They use fixed seeds and loose tolerances, and take a few
    seconds each; deselect with ``-m "not statistical"``.

    Registration here suppresses PytestUnknownMarkWarning and makes the mark
    visible in ``pytest --markers``.
"""


def pytest_configure(config):
    """
    Configure pytest before test collection begins.
    """
    config.addinivalue_line(
        "markers",
        "statistical: Monte Carlo test against a closed-form expectation "
        "(fixed seed, a few seconds)",
    )
