import hashlib
import os
import threading

import pytest

from storagetap import pipe
from storagetap.filepipe import (OFFSET_OLDEST, FileConsumer, FilePipe,
                                 init_file_pipe)
from storagetap.fileproducer import FilePipeOptions
from storagetap.header import Header
from storagetap.pipe import PipeConfig, PipeError

AES_KEY = hashlib.sha256(b"placeholder").hexdigest()[:32]
HMAC_KEY = "secret"

TOPICS = 3
RECORDS = 31


def _pipe(tmp_path, **overrides):
    opts = dict(datadir=str(tmp_path), max_file_size=1024, delimited=True)
    opts.update(overrides)
    return FilePipe(FilePipeOptions(**opts))


def _consume(consumer, count, timeout=10.0):
    watchdog = threading.Timer(timeout, consumer.close)
    watchdog.start()
    try:
        out = []
        for _ in range(count):
            assert consumer.fetch_next()
            out.append(consumer.pop())
        return out
    finally:
        watchdog.cancel()


CONFIGS = [
    pytest.param(dict(max_file_size=1024), id="basic"),
    pytest.param(dict(max_file_size=1), id="small"),
    pytest.param(dict(max_file_size=1, aes_key=AES_KEY), id="encryption"),
    pytest.param(dict(max_file_size=1, aes_key=AES_KEY, hmac_key=HMAC_KEY,
                      verify_hmac=True), id="verify-hmac"),
    pytest.param(dict(max_file_size=1, compression=True), id="compression"),
    pytest.param(dict(max_file_size=1, aes_key=AES_KEY, hmac_key=HMAC_KEY,
                      verify_hmac=True, compression=True), id="compression-encryption"),
    pytest.param(dict(max_file_size=1, no_header=True), id="no-header"),
]


@pytest.mark.parametrize("mode", ["nokey", "key", "batch"])
@pytest.mark.parametrize("config", CONFIGS)
def test_loop(tmp_path, config, mode):
    fp = _pipe(tmp_path, **config)
    consumers = {}
    for i in range(TOPICS):
        topic = f"topic{i}"
        consumer = fp.new_consumer(topic)
        consumer.set_format("text")
        consumers[topic] = consumer

    for topic in consumers:
        producer = fp.new_producer(topic)
        producer.set_format("text")
        for j in range(RECORDS):
            msg = f"{topic}key.{j}"
            if mode == "key":
                producer.push_k(msg, msg.encode())
            elif mode == "nokey":
                producer.push(msg.encode())
            else:
                producer.push_batch(msg, msg.encode())
        if mode == "batch":
            producer.push_batch_commit()
        producer.close()

    for topic, consumer in consumers.items():
        got = _consume(consumer, RECORDS)
        consumer.close()
        expected = {f"{topic}key.{j}".encode() for j in range(RECORDS)}
        assert len(got) == RECORDS
        assert set(got) == expected


def test_header(tmp_path):
    fp = _pipe(tmp_path)
    producer = fp.new_producer("header-test-topic")
    consumer = fp.new_consumer("header-test-topic")
    producer.set_format("json")

    producer.push_schema("key", b"schema-to-test-header")
    msg = b'{"Test" : "file data"}'
    producer.push(msg)
    producer.close()

    assert _consume(consumer, 2) == [b"schema-to-test-header", msg]
    header = consumer.header
    assert header.format == "json"
    assert header.schema == b"schema-to-test-header"
    assert header.hmac == "79272b31d679f9ff72457002da87e985dad203a281ac84de6b5420631f9cb17c"
    consumer.close()


def test_binary(tmp_path):
    fp = _pipe(tmp_path)
    producer = fp.new_producer("binary-test-topic")
    producer.set_format("binary")
    consumer = fp.new_consumer("binary-test-topic")

    producer.push(b"first")
    producer.push(b"second")
    producer.close()

    assert _consume(consumer, 2) == [b"first", b"second"]
    consumer.close()


def test_no_delimiter(tmp_path):
    topic = "no-delimiter-test-topic"
    fp = _pipe(tmp_path, delimited=False)
    producer = fp.new_producer(topic)
    producer.set_format("json")
    consumer = fp.new_consumer(topic)

    producer.push(b"first")
    producer.push(b"second")
    producer.close()

    assert consumer.fetch_next()
    with pytest.raises(PipeError) as info:
        consumer.pop()
    assert str(info.value) == "cannot consume non delimited file"
    consumer.close()

    names = os.listdir(tmp_path / topic)
    assert len(names) == 1
    content = (tmp_path / topic / names[0]).read_bytes()
    assert content == (b'{"Format":"json","HMAC-SHA256":'
                       b'"e8bf2c23a49dda570ac39e0a90683fe305620263f9d50ade99f835d3bc0bb05e"}\n'
                       b"firstsecond")


def test_offsets(tmp_path):
    topic = "file-offsets-test-topic"
    fp = _pipe(tmp_path)
    producer = fp.new_producer(topic)
    producer.set_format("json")

    c1 = fp.new_consumer(topic)
    msg1 = b'{"Test" : "filedata1"}'
    producer.push(msg1)

    c2 = fp.new_consumer(topic)
    fp.initial_offset = OFFSET_OLDEST
    c3 = fp.new_consumer(topic)

    msg2 = b'{"Test" : "filedata2"}'
    producer.push(msg2)
    producer.close()

    assert _consume(c1, 2) == [msg1, msg2]
    assert _consume(c2, 1) == [msg2]
    assert _consume(c3, 2) == [msg1, msg2]
    for consumer in (c1, c2, c3):
        consumer.close()


def test_encryption_binary(tmp_path):
    fp = _pipe(tmp_path, aes_key=AES_KEY, hmac_key=HMAC_KEY, verify_hmac=True)
    producer = fp.new_producer("binary-test-topic")
    producer.set_format("binary")
    consumer = fp.new_consumer("binary-test-topic")

    producer.push(b"first")
    producer.push(b"second")
    producer.close()

    assert _consume(consumer, 2) == [b"first", b"second"]
    consumer.close()


def test_encrypted_file_does_not_hold_plaintext(tmp_path):
    fp = _pipe(tmp_path, aes_key=AES_KEY)
    producer = fp.new_producer("t")
    producer.set_format("text")
    producer.push(b"visible-message")
    producer.close()

    (name,) = os.listdir(tmp_path / "t")
    content = (tmp_path / "t" / name).read_bytes()
    assert b"visible-message" not in content
    assert b"aes256-cfb" in content


def test_hmac_mismatch(tmp_path):
    writer = _pipe(tmp_path, hmac_key="secret")
    producer = writer.new_producer("t")
    producer.set_format("text")
    producer.push(b"data")
    producer.close()

    reader = _pipe(tmp_path, hmac_key="token", verify_hmac=True)
    reader.initial_offset = OFFSET_OLDEST
    consumer = reader.new_consumer("t")
    assert consumer.fetch_next()
    with pytest.raises(PipeError, match="File authentication failed"):
        consumer.pop()
    consumer.close()


def test_arbitrary_offset_rejected(tmp_path):
    fp = _pipe(tmp_path)
    producer = fp.new_producer("t")
    producer.push(b"data")
    producer.close()

    with pytest.raises(PipeError, match="Arbitrary offsets not supported"):
        FileConsumer(fp.options, "t", initial_offset=5)


def test_closed_consumer_fetch_returns_false(tmp_path):
    consumer = _pipe(tmp_path).new_consumer("empty")
    consumer.close()
    assert consumer.fetch_next() is False


def test_cancel_event_stops_waiting(tmp_path):
    cancel = threading.Event()
    fp = FilePipe(FilePipeOptions(datadir=str(tmp_path), delimited=True), cancel=cancel)
    consumer = fp.new_consumer("empty")
    cancel.set()
    assert consumer.fetch_next() is False


def test_corrupted_text_file(tmp_path):
    topic_dir = tmp_path / "t"
    topic_dir.mkdir()
    header = Header(format="json", delimited=True).to_json()
    (topic_dir / "0000000001.001.default").write_bytes(header + b"\nabc\nxyz")

    fp = _pipe(tmp_path)
    fp.initial_offset = OFFSET_OLDEST
    consumer = fp.new_consumer("t")
    assert _consume(consumer, 1) == [b"abc"]
    assert consumer.fetch_next()
    with pytest.raises(PipeError, match="Corrupted file"):
        consumer.pop()
    consumer.close()


def test_consumer_waits_for_producer(tmp_path):
    fp = _pipe(tmp_path, max_file_size=1)
    consumer = fp.new_consumer("live")
    consumer.set_format("text")
    received = []

    def run():
        received.extend(_consume(consumer, 3))

    thread = threading.Thread(target=run)
    thread.start()
    producer = fp.new_producer("live")
    producer.set_format("text")
    for msg in (b"one", b"two", b"three"):
        producer.push(msg)
    producer.close()
    thread.join(15)
    consumer.close()
    assert received == [b"one", b"two", b"three"]


def test_type():
    assert init_file_pipe(0, PipeConfig()).type() == "file"
    assert pipe.create("FILE", 0, PipeConfig()).type() == "file"


def test_init_file_pipe_reads_config(tmp_path):
    cfg = PipeConfig(data_dir=str(tmp_path), max_file_size=77, pipe_compression=True)
    fp = init_file_pipe(8, cfg)
    assert fp.options.datadir == str(tmp_path)
    assert fp.options.max_file_size == 77
    assert fp.options.compression is True
    assert fp.options.delimited is False


def test_save_offset_and_set_format(tmp_path):
    consumer = _pipe(tmp_path).new_consumer("t")
    consumer.set_format("json")
    consumer.save_offset()
    assert consumer.text is True
    assert consumer.header.format == "json"
    consumer.set_format("binary")
    assert consumer.text is False
    consumer.close()