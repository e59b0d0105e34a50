"""
Test suite for RWLock, the lock guarding the in-memory tree.
"""

import threading
import pytest
from rwlock import RWLock

# Seconds to wait for something that is expected to happen.
TIMEOUT = 5
# Seconds to wait before concluding that a thread is blocked.
BLOCKED = 0.2


@pytest.fixture
def lock() -> RWLock:
    """
    Prepare unlocked RWLock.
    """
    return RWLock()


def test_readers_share_lock(lock: RWLock):
    """
    Test if several readers can hold the lock at the same time.
    """
    barrier = threading.Barrier(3, timeout=TIMEOUT)
    errors: list[Exception] = []

    def reader():
        try:
            with lock.shared():
                # All readers must be inside together to pass the barrier.
                barrier.wait()
        except threading.BrokenBarrierError as e:
            errors.append(e)

    threads = [threading.Thread(target=reader) for _ in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(TIMEOUT)

    assert not errors
    assert not lock.is_locked


def test_writer_excludes_reader(lock: RWLock):
    """
    Test if reader waits until writer releases the lock.
    """
    entered = threading.Event()

    def reader():
        with lock.shared():
            entered.set()

    lock.acquire_write()
    thread = threading.Thread(target=reader)
    thread.start()
    assert not entered.wait(BLOCKED)

    lock.release_write()
    assert entered.wait(TIMEOUT)
    thread.join(TIMEOUT)


def test_reader_excludes_writer(lock: RWLock):
    """
    Test if writer waits until all readers release the lock.
    """
    entered = threading.Event()

    def writer():
        with lock.exclusive():
            entered.set()

    lock.acquire_read()
    lock.acquire_read()
    thread = threading.Thread(target=writer)
    thread.start()
    assert not entered.wait(BLOCKED)

    lock.release_read()
    assert not entered.wait(BLOCKED)

    lock.release_read()
    assert entered.wait(TIMEOUT)
    thread.join(TIMEOUT)


def test_waiting_writer_blocks_new_readers(lock: RWLock):
    """
    Test if reader arriving after a waiting writer is let in only after the writer.
    """
    order: list[str] = []

    def writer():
        with lock.exclusive():
            order.append('writer')

    def reader():
        with lock.shared():
            order.append('reader')

    lock.acquire_read()
    writer_thread = threading.Thread(target=writer)
    writer_thread.start()
    # Give the writer time to queue up.
    writer_thread.join(BLOCKED)

    reader_thread = threading.Thread(target=reader)
    reader_thread.start()
    reader_thread.join(BLOCKED)
    assert order == []

    lock.release_read()
    writer_thread.join(TIMEOUT)
    reader_thread.join(TIMEOUT)
    assert order == ['writer', 'reader']


def test_lock_released_on_exception(lock: RWLock):
    """
    Test if context managers release the lock when the block raises.
    """
    with pytest.raises(ValueError):
        with lock.exclusive():
            raise ValueError()
    assert not lock.is_locked

    with pytest.raises(ValueError):
        with lock.shared():
            raise ValueError()
    assert not lock.is_locked


def test_release_without_acquire(lock: RWLock):
    """
    Test if releasing a lock which is not held is reported.
    """
    with pytest.raises(RuntimeError):
        lock.release_read()
    with pytest.raises(RuntimeError):
        lock.release_write()
