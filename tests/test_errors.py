"""
Error taxonomy: every engine error is a ScanError, network ones are also builtins
"""

import pytest

from posturescan.util.errors import (
    FetchError, InsufficientCreditsError, OrchestrationError, ScanConnectionError,
    ScanError, ScanTimeoutError, ValidationError,
)


@pytest.mark.parametrize('error_class', [
    ScanConnectionError, ScanTimeoutError, FetchError, ValidationError,
    InsufficientCreditsError, OrchestrationError,
])
def test_all_errors_are_scan_errors(error_class):
    assert issubclass(error_class, ScanError)


@pytest.mark.parametrize('error_class,builtin', [
    (ScanConnectionError, ConnectionError),
    (ScanTimeoutError, TimeoutError),
    (ValidationError, ValueError),
])
def test_builtin_handlers_still_catch(error_class, builtin):
    with pytest.raises(builtin):
        raise error_class('boom')


def test_fetch_error_is_not_a_connection_error():
    assert not issubclass(FetchError, ConnectionError)
