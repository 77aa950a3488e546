import pytest

from clinic_backend.core.errors import ResolutionCancelled
from clinic_backend.scheduling import cancellation
from clinic_backend.scheduling.cancellation import CancellationToken


def test_explicit_cancel() -> None:
    token = CancellationToken()
    assert not token.cancelled

    token.cancel()

    assert token.cancelled
    with pytest.raises(ResolutionCancelled) as exception_info:
        token.raise_if_cancelled()
    assert exception_info.value.http_status == 503


def test_deadline_cancels_token(monkeypatch) -> None:
    now = [100.0]
    monkeypatch.setattr(cancellation.time, 'monotonic', lambda: now[0])
    token = CancellationToken(timeout_seconds=5)

    token.raise_if_cancelled()
    now[0] = 105.0

    with pytest.raises(ResolutionCancelled) as exception_info:
        token.raise_if_cancelled()
    assert exception_info.value.details == {'deadline_passed': True}


def test_no_timeout_never_expires() -> None:
    assert not CancellationToken(timeout_seconds=None).cancelled
