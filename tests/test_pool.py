import queue
import threading
import time

import pytest

from storagetap import pool


def wait_for(read, target, attempts=25):
    for _ in range(attempts):
        if read() == target:
            break
        time.sleep(0.2)
    return read()


def test_basic():
    lock = threading.Lock()
    counter = [0]
    sig = queue.Queue()
    p = pool.create()

    assert p.num_procs() == 0

    def worker():
        with lock:
            counter[0] += 1
        while not p.terminate():
            sig.get()
        with lock:
            counter[0] -= 1

    def current():
        with lock:
            return counter[0]

    p.start(2, worker)
    assert wait_for(current, 2) == 2
    assert p.num_procs() == 2

    p.adjust(8)
    assert wait_for(current, 8) == 8
    assert p.num_procs() == 8

    p.adjust(3)
    for _ in range(5):
        sig.put(True)
    assert wait_for(current, 3) == 3
    assert p.num_procs() == 3

    p.adjust(0)
    for _ in range(3):
        sig.put(True)
    assert wait_for(current, 0) == 0
    assert p.num_procs() == 0
    assert p.wait(5) is True


def test_terminate_without_shrink_is_false():
    p = pool.create()
    assert p.terminate() is False
    assert p.num_procs() == 0


def test_wait_times_out_while_workers_run():
    release = threading.Event()
    p = pool.create()
    p.start(2, release.wait)
    assert p.wait(0.1) is False
    release.set()
    assert p.wait(5) is True


def test_workers_finishing_on_their_own():
    done = []
    lock = threading.Lock()

    def worker():
        with lock:
            done.append(1)

    p = pool.create()
    p.start(4, worker)
    assert p.wait(5) is True
    assert len(done) == 4
    assert p.num_procs() == 4


def test_adjust_without_function():
    p = pool.create()
    with pytest.raises(RuntimeError):
        p.adjust(1)
    assert p.num_procs() == 0


def test_negative_size_rejected():
    p = pool.create()
    with pytest.raises(ValueError):
        p.adjust(-1)