#!/usr/bin/env python3
"""
SQL Server connection load generator
Opens connections at a fixed rate up to a ceiling, holds them all open and
prints pool statistics periodically. Use it to find the point where a server
(or a proxy in front of it) starts refusing or slowing down new connections.
Usage: python3 mssql_connload.py <server> <database> <username> <password> [port] [max_connections] [rate]
"""

import sys
import os
import signal
import threading
import time
import datetime
import functools
import math
from dataclasses import dataclass

import pymssql

STRICT = "strict"
BEST_EFFORT = "best-effort"
OVERFLOW_STOP = "stop"
OVERFLOW_DROP = "drop"

ACQUIRING = "ACQUIRING"
STOPPED = "STOPPED"


def log(message):
    """Print one timestamped line"""
    print(f"{datetime.datetime.now():%Y/%m/%d %H:%M:%S} {message}", flush=True)


class ConfigError(ValueError):
    """Invalid startup configuration"""


@dataclass
class LoadConfig:
    server: str
    database: str
    username: str
    password: str
    port: int = 1433
    max_conns: int = 1000
    rate: float = 1.0
    rate_limiter: str = STRICT
    overflow: str = OVERFLOW_STOP
    workers: int = 1
    stats_interval: float = 5.0
    hold_interval: float = 10.0
    connect_timeout: float = 0.0
    backoff_max: float = 0.0
    poll_interval: float = 0.001
    run_seconds: float = 0.0


def _parse(name, value, cast, minimum=None, exclusive=False):
    try:
        parsed = cast(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid value '{value}' for {name}") from None
    if isinstance(parsed, float) and not math.isfinite(parsed):
        raise ConfigError(f"Invalid value '{value}' for {name}: must be a finite number")
    if minimum is not None:
        if parsed < minimum or (exclusive and parsed == minimum):
            bound = "greater than" if exclusive else "at least"
            raise ConfigError(f"Invalid value '{value}' for {name}: must be {bound} {minimum}")
    return parsed


def load_config(argv, environ):
    """Build a LoadConfig from positional arguments, falling back to the environment"""
    args = list(argv)

    def pick(index, env_name, default=None):
        if len(args) > index and args[index] != "":
            return args[index]
        return environ.get(env_name, default)

    server = pick(0, "MSSQL_HOST", "localhost")
    database = pick(1, "MSSQL_DATABASE")
    username = pick(2, "MSSQL_USER")
    password = pick(3, "MSSQL_PASSWORD", "")

    if not database:
        raise ConfigError("Missing database name (MSSQL_DATABASE)")
    if not username:
        raise ConfigError("Missing username (MSSQL_USER)")

    rate_limiter = environ.get("RATE_LIMITER", STRICT)
    if rate_limiter not in (STRICT, BEST_EFFORT):
        raise ConfigError(f"Invalid value '{rate_limiter}' for RATE_LIMITER: expected '{STRICT}' or '{BEST_EFFORT}'")

    overflow = environ.get("OVERFLOW_POLICY", OVERFLOW_STOP)
    if overflow not in (OVERFLOW_STOP, OVERFLOW_DROP):
        raise ConfigError(f"Invalid value '{overflow}' for OVERFLOW_POLICY: expected '{OVERFLOW_STOP}' or '{OVERFLOW_DROP}'")

    return LoadConfig(
        server=server,
        database=database,
        username=username,
        password=password,
        port=_parse("MSSQL_PORT", pick(4, "MSSQL_PORT", "1433"), int, 1),
        max_conns=_parse("MAX_CONNS", pick(5, "MAX_CONNS", "1000"), int, 1),
        rate=_parse("CONN_CREATION_RATE", pick(6, "CONN_CREATION_RATE", "1"), float, 0, exclusive=True),
        rate_limiter=rate_limiter,
        overflow=overflow,
        workers=_parse("WORKERS", environ.get("WORKERS", "1"), int, 1),
        stats_interval=_parse("STATS_INTERVAL", environ.get("STATS_INTERVAL", "5"), float, 0, exclusive=True),
        hold_interval=_parse("HOLD_INTERVAL", environ.get("HOLD_INTERVAL", "10"), float, 0, exclusive=True),
        connect_timeout=_parse("CONNECT_TIMEOUT", environ.get("CONNECT_TIMEOUT", "0"), float, 0),
        backoff_max=_parse("BACKOFF_MAX", environ.get("BACKOFF_MAX", "0"), float, 0),
        poll_interval=_parse("POLL_INTERVAL", environ.get("POLL_INTERVAL", "0.001"), float, 0),
        run_seconds=_parse("RUN_SECONDS", environ.get("RUN_SECONDS", "0"), float, 0),
    )


class RateGovernor:
    """Answers "may I act now?" for one or more connector threads"""

    def __init__(self, rate):
        if not math.isfinite(rate) or rate <= 0:
            raise ConfigError(f"Connection creation rate must be positive, got {rate}")
        self.rate = rate
        self.interval = 1.0 / rate
        self.lock = threading.Lock()

    def try_acquire(self, stop_event):
        raise NotImplementedError


class StrictRateGovernor(RateGovernor):
    """Token bucket with a single token: permits one action per interval, parking callers until their slot"""

    def __init__(self, rate):
        super().__init__(rate)
        self.next_allowed = 0.0

    def try_acquire(self, stop_event):
        with self.lock:
            now = time.monotonic()
            slot = max(now, self.next_allowed)
            self.next_allowed = slot + self.interval

        while True:
            remaining = slot - time.monotonic()
            if remaining <= 0:
                return not stop_event.is_set()
            if stop_event.wait(remaining):
                return False


class BestEffortRateGovernor(RateGovernor):
    """Permits an action only if a full interval passed since the last one; never blocks"""

    def __init__(self, rate):
        super().__init__(rate)
        self.last_fired = None

    def try_acquire(self, stop_event=None):
        with self.lock:
            now = time.monotonic()
            if self.last_fired is not None and now - self.last_fired < self.interval:
                return False
            self.last_fired = now
            return True

    def run(self, action):
        """Execute a supplied action when permitted, without blocking; returns whether it ran.

        The same check as try_acquire for callers that hand over the action itself.
        """
        if not self.try_acquire():
            return False
        action()
        return True


def make_rate_governor(kind, rate):
    if kind == STRICT:
        return StrictRateGovernor(rate)
    if kind == BEST_EFFORT:
        return BestEffortRateGovernor(rate)
    raise ConfigError(f"Unknown rate limiter '{kind}'")


@dataclass
class RegistrySnapshot:
    open_connections: int
    total_acquire_ms: float
    elapsed_seconds: float
    failed: int
    dropped: int


def close_connection(conn):
    try:
        conn.close()
        return True
    except pymssql.Error as e:
        log(f"⚠️  Failed to close connection: {e}")
        return False


class ConnectionRegistry:
    """Hold every acquired connection plus acquisition metrics, shared between threads"""

    def __init__(self, max_conns):
        self.max_conns = max_conns
        self.lock = threading.Lock()
        self.connections = []
        self.pending = 0
        self.total_acquire_ms = 0.0
        self.failed = 0
        self.dropped = 0
        self.closed = False
        self.start_time = time.monotonic()

    def __len__(self):
        with self.lock:
            return len(self.connections)

    def is_full(self):
        with self.lock:
            return len(self.connections) >= self.max_conns

    def reserve(self):
        """Claim capacity for one in-flight acquisition"""
        with self.lock:
            if self.closed or len(self.connections) + self.pending >= self.max_conns:
                return False
            self.pending += 1
            return True

    def release(self):
        with self.lock:
            self.pending -= 1

    def add(self, conn, elapsed_ms, reserved=False):
        """Append a live connection; returns False when full or closed"""
        with self.lock:
            if reserved:
                self.pending -= 1
            if self.closed or len(self.connections) >= self.max_conns:
                return False
            self.connections.append(conn)
            self.total_acquire_ms += elapsed_ms
            return True

    def record_failure(self):
        with self.lock:
            self.failed += 1

    def record_drop(self):
        with self.lock:
            self.dropped += 1

    def snapshot(self):
        with self.lock:
            return RegistrySnapshot(
                open_connections=len(self.connections),
                total_acquire_ms=self.total_acquire_ms,
                elapsed_seconds=time.monotonic() - self.start_time,
                failed=self.failed,
                dropped=self.dropped,
            )

    def close_all(self):
        """Close all connections"""
        with self.lock:
            self.closed = True
            connections = list(self.connections)

        log(f"Closing all {len(connections)} connections...")
        closed = 0
        for conn in connections:
            if close_connection(conn):
                closed += 1
        log(f"✓ Closed {closed} connections")
        return closed


def backoff_delay(failures, base, cap):
    """Exponential backoff after consecutive failures, 0 when disabled"""
    if cap <= 0 or failures <= 0:
        return 0.0
    return min(cap, base * (2 ** (failures - 1)))


class Connector:
    """Worker loop that acquires connections until the registry is full or the run stops"""

    def __init__(self, worker_id, connect, registry, governor, stop_event,
                 overflow=OVERFLOW_STOP, backoff_max=0.0, poll_interval=0.001):
        self.worker_id = worker_id
        self.connect = connect
        self.registry = registry
        self.governor = governor
        self.stop_event = stop_event
        self.overflow = overflow
        self.backoff_max = backoff_max
        self.poll_interval = poll_interval
        self.state = ACQUIRING
        self.attempts = 0
        self.consecutive_failures = 0

    def run(self):
        try:
            while not self.stop_event.is_set():
                if not self.step():
                    break
        finally:
            self.state = STOPPED
        log(f"[Worker {self.worker_id:3d}] Stopped after {self.attempts} attempts")

    def step(self):
        """One pass of the loop; returns False once the worker should stop"""
        reserved = False
        if self.overflow == OVERFLOW_STOP:
            if self.registry.is_full():
                log(f"[Worker {self.worker_id:3d}] Registry full ({self.registry.max_conns} connections), stopping...")
                return False
            if not self.registry.reserve():
                self.stop_event.wait(self.poll_interval)
                return True
            reserved = True

        if not self.governor.try_acquire(self.stop_event):
            if reserved:
                self.registry.release()
            self.stop_event.wait(self.poll_interval)
            return True

        self.attempts += 1
        start = time.monotonic()
        try:
            conn = self.connect()
        except pymssql.Error as e:
            self._failed(reserved, f"✗ Failed to get connection: {e}")
            return True
        except Exception as e:
            self._failed(reserved, f"✗ Unexpected error: {e}")
            return True
        elapsed_ms = (time.monotonic() - start) * 1000
        self.consecutive_failures = 0

        if self.registry.add(conn, elapsed_ms, reserved=reserved):
            return True

        close_connection(conn)
        if self.stop_event.is_set():
            return False
        self.registry.record_drop()
        log(f"[Worker {self.worker_id:3d}] Reached max number of connections, stopping...")
        return False

    def _failed(self, reserved, message):
        if reserved:
            self.registry.release()
        self.registry.record_failure()
        self.consecutive_failures += 1
        log(f"[Worker {self.worker_id:3d}] {message}")

        delay = backoff_delay(self.consecutive_failures, self.governor.interval, self.backoff_max)
        if delay > 0:
            log(f"[Worker {self.worker_id:3d}] Backing off {delay:.2f}s after {self.consecutive_failures} consecutive failures")
            self.stop_event.wait(delay)


def format_stats(snapshot):
    """Render one stats line, using n/a wherever a divisor is zero"""
    opened = snapshot.open_connections
    if opened > 0:
        average = f"{snapshot.total_acquire_ms / opened:.1f}ms"
    else:
        average = "n/a"
    if snapshot.elapsed_seconds > 0:
        creation_rate = f"{opened / snapshot.elapsed_seconds:.2f}/s"
    else:
        creation_rate = "n/a"
    return f"OpenConnections: {opened}; AverageConnCreationTime: {average}; CreationRate: {creation_rate}"


class StatsReporter(threading.Thread):
    """Background thread printing pool statistics on a fixed tick"""

    def __init__(self, registry, interval, stop_event):
        super().__init__(name="stats-reporter", daemon=True)
        self.registry = registry
        self.interval = interval
        self.stop_event = stop_event

    def report(self):
        line = format_stats(self.registry.snapshot())
        log(line)
        return line

    def run(self):
        while not self.stop_event.wait(self.interval):
            self.report()


def mssql_connect_factory(config):
    """Return a callable opening one direct pymssql connection"""
    kwargs = {
        "server": f"{config.server}:{config.port}",
        "database": config.database,
        "user": config.username,
        "password": config.password,
    }
    if config.connect_timeout > 0:
        kwargs["login_timeout"] = int(max(1, round(config.connect_timeout)))
    return functools.partial(pymssql.connect, **kwargs)


def check_connectivity(connect):
    """Open one connection, read its session id and close it"""
    conn = connect()
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT @@SPID as SessionID")
        row = cursor.fetchone()
        cursor.close()
        return row[0]
    finally:
        conn.close()


def run(config, connect=None, stop_event=None):
    """Hold up to max_conns connections until stopped"""
    if connect is None:
        connect = mssql_connect_factory(config)
    if stop_event is None:
        stop_event = threading.Event()

    print("=" * 70)
    print("=== SQL Server Connection Load Generator ===")
    print("=" * 70)
    print(f"Target:              {config.server}:{config.port}")
    print(f"Database:            {config.database}")
    print(f"Username:            {config.username}")
    print(f"Max connections:     {config.max_conns}")
    print(f"Creation rate:       {config.rate:g}/s ({config.rate_limiter})")
    print(f"Overflow policy:     {config.overflow}")
    print(f"Workers:             {config.workers}")
    print(f"Connect timeout:     {f'{config.connect_timeout:g}s' if config.connect_timeout > 0 else 'none'}")
    print(f"Start time:          {datetime.datetime.now()}")
    print("=" * 70, flush=True)

    governor = make_rate_governor(config.rate_limiter, config.rate)

    try:
        session_id = check_connectivity(connect)
    except (pymssql.Error, OSError) as e:
        log(f"✗ Health check failed: {e}")
        return 1
    log(f"✓ Health check passed (Session {session_id})")

    log(f"Creating {config.max_conns} connections at a rate of {config.rate:g} per second")

    registry = ConnectionRegistry(config.max_conns)
    reporter = StatsReporter(registry, config.stats_interval, stop_event)
    reporter.start()

    threads = []
    for worker_id in range(1, config.workers + 1):
        connector = Connector(
            worker_id, connect, registry, governor, stop_event,
            overflow=config.overflow,
            backoff_max=config.backoff_max,
            poll_interval=config.poll_interval,
        )
        thread = threading.Thread(target=connector.run, name=f"connector-{worker_id}", daemon=True)
        thread.start()
        threads.append(thread)

    deadline = time.monotonic() + config.run_seconds if config.run_seconds > 0 else None
    try:
        while True:
            wait = config.hold_interval
            if deadline is not None:
                wait = min(wait, deadline - time.monotonic())
                if wait <= 0:
                    log("⏰ Run duration reached. Stopping workers...")
                    break
            if stop_event.wait(wait):
                log("Stop requested. Stopping workers...")
                break
            if deadline is None or time.monotonic() < deadline:
                log(f"Holding onto {len(registry)} connections")
    except KeyboardInterrupt:
        log("⚠️  Interrupted by user")

    stop_event.set()
    # Workers blocked inside connect() without a timeout may never return.
    join_deadline = time.monotonic() + max(config.connect_timeout, 5)
    for thread in threads:
        thread.join(timeout=max(0, join_deadline - time.monotonic()))
    reporter.join(timeout=max(0, join_deadline - time.monotonic()))

    snapshot = registry.snapshot()
    registry.close_all()

    attempts = snapshot.open_connections + snapshot.failed + snapshot.dropped
    elapsed_total = int(snapshot.elapsed_seconds)
    print()
    print("=" * 70)
    print("=== Results ===")
    print("=" * 70)
    print(f"End time:            {datetime.datetime.now()}")
    print(f"Total duration:      {elapsed_total // 60}m {elapsed_total % 60}s")
    print(f"Connection attempts: {attempts}")
    print(f"Held open:           {snapshot.open_connections}")
    print(f"Failed:              {snapshot.failed}")
    print(f"Dropped:             {snapshot.dropped}")
    print(f"Last stats:          {format_stats(snapshot)}")
    print("=" * 70, flush=True)
    return 0


USAGE = """\
Usage: python3 mssql_connload.py <server> <database> <username> <password> [port] [max_connections] [rate]

Arguments (each falls back to the environment variable in brackets):
  server          - Database server IP/hostname [MSSQL_HOST] (default: localhost)
  database        - Database name [MSSQL_DATABASE]
  username        - Database username [MSSQL_USER]
  password        - Database password [MSSQL_PASSWORD]
  port            - Database port [MSSQL_PORT] (default: 1433)
  max_connections - Connections to open and hold [MAX_CONNS] (default: 1000)
  rate            - Connections created per second [CONN_CREATION_RATE] (default: 1)

Environment:
  RATE_LIMITER    - strict | best-effort (default: strict)
  OVERFLOW_POLICY - stop | drop (default: stop)
  WORKERS         - Concurrent connector threads (default: 1)
  STATS_INTERVAL  - Seconds between stats lines (default: 5)
  HOLD_INTERVAL   - Seconds between holding heartbeats (default: 10)
  CONNECT_TIMEOUT - Login timeout in seconds, 0 for none (default: 0)
  BACKOFF_MAX     - Cap in seconds for backoff after failures, 0 disables (default: 0)
  POLL_INTERVAL   - Best-effort polling sleep in seconds (default: 0.001)
  RUN_SECONDS     - Stop after this many seconds, 0 runs until signalled (default: 0)

Examples:
  python3 mssql_connload.py 172.16.4.207 master sa MyPassword123
  python3 mssql_connload.py 172.16.4.207 master sa MyPassword123 1433 500 20
  MSSQL_USER=sa MSSQL_PASSWORD=MyPassword123 MSSQL_DATABASE=master RATE_LIMITER=best-effort python3 mssql_connload.py
"""


def main(argv=None):
    if argv is None:
        argv = sys.argv[1:]

    try:
        config = load_config(argv, os.environ)
    except ConfigError as e:
        print(f"✗ {e}")
        print()
        print(USAGE)
        return 1

    stop_event = threading.Event()
    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, lambda signum, frame: stop_event.set())

    return run(config, stop_event=stop_event)


def cli():
    sys.exit(main())


if __name__ == "__main__":
    cli()
