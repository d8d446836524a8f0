# storagetap

Building blocks for a service that reads database changes and streams them
onward: a pluggable logger, a thread pool that can be grown and shrunk at run
time, metrics counters and timers, and message pipes that connect named
producers with consumers.

It is a library only; it has no command-line entry point.

## Logging

`storagetap.logger` keeps one default logger and a registry of logger
plugins. Out of the box `std` (plain lines on standard error, optionally
prefixed with fields) and `structured` (key=value records, or JSON lines when
the production flag is set) are registered. An unknown plugin name prints a
notice and falls back to `std`; an unknown level name gives `Level.INFO`.

```python
from storagetap import logger

logger.configure("std", "debug", False)

logger.infof("starting %s", "worker")
logger.warnf("lag is %d seconds", 12)

scoped = logger.with_fields({"table": "orders", "db": "shop"})
scoped.errorf("row rejected")

# e() logs an error if there is one and tells whether there was one
if logger.e(ValueError("bad row")):
    ...
```

Levels are the `Level` enum: `PANIC`, `FATAL`, `ERROR`, `WARN`, `INFO`,
`DEBUG`; a logger prints messages at or below its own level. `parse_level`
converts a name to a `Level`.

`panicf` logs and then raises `LoggerPanic`; `fatalf` and `f(err)` log and
then raise `SystemExit(1)`. `el(logger, err)` works like `e` with a given
logger. `default_logger()` returns the current default and
`set_default_logger(logger)` swaps it, returning the previous one. Your own
plugins are added with `register_plugin(name, constructor)`, where the
constructor takes a level and a production flag and returns a `Logger`
(`StdLogger` and `StructuredLogger` are the built-in ones).

## Thread pool

`storagetap.pool.ThreadPool` runs a number of copies of one function in
daemon threads. Growing the pool starts new threads; shrinking it relies on
the threads to call `terminate()` now and then and to return when it says
so.

```python
from storagetap import pool

tp = pool.create()

def work():
    while not tp.terminate():
        ...  # do one unit of work

tp.start(4, work)
tp.adjust(2)        # two threads will leave on their next terminate() check
print(tp.num_procs())
tp.adjust(0)
tp.wait(timeout=5)  # True once every started thread has returned
```

`adjust` raises `ValueError` for a negative size, and `RuntimeError` when
asked to grow before `start` has given it a function.

## Metrics

`storagetap.metrics` provides `Counter`, `ProcessCounter` (started, finished
and running processes) and `Timer`, all reporting through a backend factory.
The default factory, `NoopMetricsFactory`, reports nowhere, which makes the
counters usable on their own.

```python
from storagetap import metrics

metrics.init_metrics(metrics.noop_metrics_init)
m = metrics.get_global()

m.num_tables_registered.inc(1)
m.idle_workers.inc()
m.idle_workers.dec()

binlog = metrics.get_binlog_reader_metrics({"process": "BinlogReader"})
binlog.num_workers.inc()
print(binlog.num_workers.get())   # 1
```

`get_streamer_metrics` and `get_snapshot_metrics` build the corresponding
metric sets; all three raise `RuntimeError` until `init_metrics` has been
called. `Timer.record` takes a `datetime.timedelta` or a number of seconds.
To report to a real monitoring system, pass `init_metrics` a function that
installs your own factory (an object with `init_counter(name)` and
`init_timer(name)`) into `metrics.factory`.

## Pipes

A pipe connects producers and consumers by topic name. Pipe types register
themselves in `storagetap.pipe` when their module is imported, and are built
with `storagetap.pipe.create(pipe_type, batch_size, cfg, db, cancel)`; an
unknown type raises `PipeError`. `registered_pipes()` lists what is
available. Setting the optional `cancel` event unblocks waiting calls.

* `local` (`storagetap.local.LocalPipe`, registered by importing
  `storagetap.local`) passes messages between threads of one process through
  bounded in-memory queues of `batch_size` slots. One object serves as both
  producer and consumer; pushing `None` ends the stream.
* `file` (`storagetap.filepipe.FilePipe`, registered by importing
  `storagetap.filepipe`) writes each topic into a directory of files.

Every producer offers `push`, `push_k`, `push_batch`, `push_batch_commit`,
`push_schema`, `set_format` and `close`. Every consumer is read in a loop:

```python
while consumer.fetch_next():
    message = consumer.pop()   # raises PipeError if fetching failed
    ...
consumer.close()
```

`fetch_next()` blocks until a message arrives and returns `False` once the
consumer has been closed or cancelled. `close_on_failure()` closes without
saving the read position. Producers and consumers are also context managers.

### Local pipe

```python
import threading
from storagetap import pipe
import storagetap.local  # registers "local"

p = pipe.create("local", 16)
producer = p.new_producer("events")
consumer = p.new_consumer("events")

def send():
    for i in range(3):
        producer.push(f"events.{i}".encode())
    producer.push(None)

threading.Thread(target=send).start()
while consumer.fetch_next():
    print(consumer.pop())
```

### File pipe

Settings live in `storagetap.fileproducer.FilePipeOptions`: `datadir`,
`max_file_size` (a file is closed and a new one started once this many bytes
have been written), `aes_key` (encrypts with AES in CFB mode; 32 characters
for AES-256), `hmac_key` and `verify_hmac` (HMAC-SHA256 over the file body),
`compression` (zlib), `no_header` and `delimited`. Files are named
`<unix time>.<seq>.<key>` inside `<datadir>/<topic>/`, carry an `.open`
suffix while being written, and consumers read only finished files, in name
order.

Each file starts with a one-line JSON header, `storagetap.header.Header`
(`write_header` / `read_header`, `to_json` / `from_json`), naming the format,
the filters applied, the schema pushed with `push_schema`, and the HMAC and
IV. With `delimited` set, messages in `json` or `text` format are
newline-terminated and others are length-prefixed; a consumer refuses
undelimited files with the error `cannot consume non delimited file`.

```python
from storagetap.filepipe import OFFSET_OLDEST, FilePipe
from storagetap.fileproducer import FilePipeOptions

options = FilePipeOptions(datadir="/tmp/pipes", max_file_size=1 << 20, delimited=True)
fp = FilePipe(options, initial_offset=OFFSET_OLDEST)

producer = fp.new_producer("events")
producer.set_format("json")
producer.push(b'{"id": 1}')
producer.close()

consumer = fp.new_consumer("events")
if consumer.fetch_next():
    print(consumer.pop())   # b'{"id": 1}'
consumer.close()
```

By default (`OFFSET_NEWEST`) a new consumer starts after what is already in
the topic. `init_file_pipe` builds a `FilePipe` from a
`storagetap.pipe.PipeConfig`; its `delimited` setting comes from the
module-level `storagetap.filepipe.DELIMITED`.

## What it does not do

* Only the `local` and `file` pipe types exist; there is no pipe to a
  message broker or a distributed file system.
* Consumers keep no offsets: `save_offset()` does nothing and a new file
  consumer starts from the oldest or newest file only.
* File consumers poll the topic directory for new files rather than being
  notified of them.
* There is no metrics backend that sends values anywhere, and no service or
  command that puts these pieces together.