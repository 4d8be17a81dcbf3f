import threading

import pytest

from lvmcsi.lock import LockByID


def test_prevent_concurrent_execution_by_same_id():
    lock = LockByID()
    lock.lock("a")
    done = threading.Event()

    def worker():
        with lock.hold("a"):
            done.set()

    thread = threading.Thread(target=worker)
    thread.start()
    assert not done.wait(1.0)

    lock.unlock("a")
    assert done.wait(5.0)
    thread.join()
    # The worker released "a" on leaving the block, so it is no longer held.
    with pytest.raises(RuntimeError, match="id=a"):
        lock.unlock("a")


def test_allow_concurrent_execution_by_different_id():
    lock = LockByID()
    lock.lock("a")
    done = threading.Event()

    def worker():
        with lock.hold("b"):
            done.set()

    thread = threading.Thread(target=worker)
    thread.start()
    assert done.wait(1.0)
    thread.join()
    with pytest.raises(RuntimeError, match="id=b"):
        lock.unlock("b")
    lock.unlock("a")
    with pytest.raises(RuntimeError, match="id=a"):
        lock.unlock("a")


def test_unlock_not_taken_raises():
    lock = LockByID()
    with pytest.raises(RuntimeError, match="id=x"):
        lock.unlock("x")


def test_hold_releases_on_error():
    lock = LockByID()
    with pytest.raises(ValueError):
        with lock.hold("a"):
            raise ValueError("fail")
    with pytest.raises(RuntimeError):
        lock.unlock("a")