import threading

import pytest

from storagetap import pipe
from storagetap.pipe import (Consumer, Pipe, PipeConfig, PipeError, Producer,
                             create, register_plugin, registered_pipes)


class _DummyConsumer(Consumer):
    def __init__(self):
        self.events = []

    def fetch_next(self):
        return False

    def pop(self):
        return None

    def close(self):
        self.events.append("close")

    def close_on_failure(self):
        self.events.append("close_on_failure")

    def save_offset(self):
        pass

    def set_format(self, fmt):
        pass


class _DummyProducer(Producer):
    def __init__(self):
        self.closed = False

    def push(self, data):
        pass

    def push_k(self, key, data):
        pass

    def push_schema(self, key, data):
        pass

    def push_batch(self, key, data):
        pass

    def push_batch_commit(self):
        pass

    def close(self):
        self.closed = True

    def set_format(self, fmt):
        pass


class _DummyPipe(Pipe):
    def __init__(self, batch_size, cfg, db, cancel):
        self.args = (batch_size, cfg, db, cancel)

    def new_consumer(self, topic):
        return _DummyConsumer()

    def new_producer(self, topic):
        return _DummyProducer()

    def type(self):
        return "dummy"


def _failing(batch_size, cfg, db, cancel):
    raise PipeError("cannot connect")


register_plugin("dummy", _DummyPipe)
register_plugin("failing", _failing)


def test_create_passes_arguments():
    cfg = PipeConfig(data_dir="/tmp/x")
    cancel = threading.Event()
    p = create("dummy", 7, cfg, "db", cancel)
    assert p.type() == "dummy"
    assert p.args == (7, cfg, "db", cancel)


def test_create_is_case_insensitive():
    p = create("DuMmY", 1)
    assert p.type() == "dummy"


def test_create_unsupported():
    with pytest.raises(PipeError, match="Unsupported pipe: nosuchpipe"):
        create("NoSuchPipe", 1)


def test_constructor_error_propagates():
    with pytest.raises(PipeError, match="cannot connect"):
        create("failing", 1)


def test_registered_pipes_is_copy():
    pipes = registered_pipes()
    assert pipes["dummy"] is _DummyPipe
    pipes.pop("dummy")
    assert "dummy" in registered_pipes()


def test_abstract_classes_not_instantiable():
    with pytest.raises(TypeError):
        Pipe()
    with pytest.raises(TypeError):
        Consumer()
    with pytest.raises(TypeError):
        Producer()


def test_consumer_context_manager_closes():
    c = create("dummy", 1).new_consumer("topic")
    with c:
        pass
    assert c.events == ["close"]


def test_consumer_context_manager_failure_close():
    c = create("dummy", 1).new_consumer("topic")
    with pytest.raises(ValueError):
        with c:
            raise ValueError("boom")
    assert c.events == ["close_on_failure"]


def test_producer_context_manager_closes():
    p = create("dummy", 1).new_producer("topic")
    with p as entered:
        assert entered is p
    assert p.closed is True


def test_unsupported_pipe_error_message_is_lowercased_type():
    with pytest.raises(pipe.PipeError) as info:
        create("MISSING", 1)
    assert str(info.value) == "Unsupported pipe: missing"