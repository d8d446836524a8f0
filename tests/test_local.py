import threading
import time

import pytest

from storagetap.local import LocalPipe, init_local_pipe
from storagetap.pipe import PipeError, create


def _local_consumer(p, key, failures):
    c = p.new_consumer(key)
    i = 0
    while c.fetch_next():
        b = c.pop()
        if len(b) == 0:
            break
        n = b.find(b"\x00")
        s = (b if n == -1 else b[:n]).decode()
        if s != f"{key}.{i}":
            failures.append((key, s, i))
            return
        i += 1
    if i != 1000:
        failures.append((key, "count", i))


def _local_producer(p, key, failures):
    c = p.new_producer(key)
    try:
        for i in range(1000):
            c.push(f"{key}.{i}".encode())
        c.push(None)
    except PipeError as exc:
        failures.append((key, str(exc)))


def test_local_basic():
    cancel = threading.Event()
    p = create("local", 16, None, None, cancel)
    failures = []
    threads = [threading.Thread(target=_local_consumer, args=(p, f"key{i}", failures))
               for i in range(16)]
    threads += [threading.Thread(target=_local_producer, args=(p, f"key{i}", failures))
                for i in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    cancel.set()
    assert all(not t.is_alive() for t in threads)
    assert failures == []


def test_local_type():
    p = init_local_pipe(0)
    assert p.type() == "local"


def test_push_none_ends_stream():
    p = LocalPipe(4)
    prod = p.new_producer("t")
    cons = p.new_consumer("t")
    prod.push(b"a")
    prod.push(None)
    assert cons.fetch_next() is True
    assert cons.pop() == b"a"
    assert cons.fetch_next() is False


def test_keyed_batch_and_schema_pushes_arrive_in_order():
    p = LocalPipe(8)
    prod = p.new_producer("t")
    cons = p.new_consumer("t")
    prod.push_k("k", b"1")
    prod.push_batch("k", b"2")
    prod.push_schema("k", b"3")
    prod.push_batch_commit()
    got = []
    for _ in range(3):
        assert cons.fetch_next()
        got.append(cons.pop())
    assert got == [b"1", b"2", b"3"]


def test_topics_are_separate():
    p = LocalPipe(2)
    p.new_producer("a").push(b"for-a")
    p.new_producer("b").push(b"for-b")
    cb = p.new_consumer("b")
    assert cb.fetch_next()
    assert cb.pop() == b"for-b"


def test_push_blocked_until_cancel_raises():
    cancel = threading.Event()
    p = LocalPipe(1, cancel)
    prod = p.new_producer("t")
    prod.push(b"fills")
    threading.Timer(0.1, cancel.set).start()
    with pytest.raises(PipeError, match="Context canceled"):
        prod.push(b"blocked")


def test_close_unblocks_fetch():
    p = LocalPipe(1)
    cons = p.new_consumer("t")
    threading.Timer(0.1, cons.close).start()
    assert cons.fetch_next() is False


def test_closed_producer_cannot_push_to_full_channel():
    p = LocalPipe(1)
    prod = p.new_producer("t")
    prod.push(b"x")
    prod.close_on_failure()
    with pytest.raises(PipeError):
        prod.push(b"y")


def test_cancel_unblocks_fetch():
    cancel = threading.Event()
    p = init_local_pipe(1, None, None, cancel)
    cons = p.new_consumer("t")
    cancel.set()
    assert cons.fetch_next() is False


def test_unbuffered_push_waits_for_receiver():
    p = LocalPipe(0)
    prod = p.new_producer("t")
    cons = p.new_consumer("t")
    done = threading.Event()

    def send():
        prod.push(b"hello")
        done.set()

    threading.Thread(target=send).start()
    time.sleep(0.2)
    assert not done.is_set()
    assert cons.fetch_next()
    assert cons.pop() == b"hello"
    assert done.wait(2)


def test_unbuffered_push_withdrawn_on_close():
    p = LocalPipe(0)
    prod = p.new_producer("t")
    cons = p.new_consumer("t")
    threading.Timer(0.1, prod.close).start()
    with pytest.raises(PipeError):
        prod.push(b"lost")
    other = p.new_producer("t")
    threading.Thread(target=other.push, args=(b"kept",)).start()
    assert cons.fetch_next()
    assert cons.pop() == b"kept"