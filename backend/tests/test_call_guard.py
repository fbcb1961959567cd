import threading

import pytest

from margin_engine.core.exceptions import CollaboratorTimeoutError
from margin_engine.services.call_guard import CallGuard


def test_returns_result_and_propagates_errors():
    guard = CallGuard(timeout=1)

    assert guard.call("add", lambda a, b: a + b, 2, 3) == 5
    with pytest.raises(ZeroDivisionError):
        guard.call("divide", lambda: 1 / 0)
    assert guard.hung_calls() == []


def test_hung_key_fails_fast_until_the_call_finishes():
    guard = CallGuard(timeout=0.1)
    release = threading.Event()
    started = []

    def stuck():
        started.append(1)
        release.wait(5)
        return "late"

    with pytest.raises(CollaboratorTimeoutError):
        guard.call("get_crypto_price", stuck, key="price:SOL")
    assert guard.hung_calls() == ["price:SOL"]

    # no second thread is started for the same key
    with pytest.raises(CollaboratorTimeoutError):
        guard.call("get_crypto_price", stuck, key="price:SOL")
    assert len(started) == 1

    # other keys are unaffected
    assert guard.call("get_crypto_price", lambda: 2500.0, key="price:ETH") == 2500.0

    finished = threading.Event()
    guard._hung["price:SOL"].add_done_callback(lambda f: finished.set())
    release.set()
    assert finished.wait(5)
    assert guard.hung_calls() == []
    assert guard.call("get_crypto_price", lambda: 150.0, key="price:SOL") == 150.0
