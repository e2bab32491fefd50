"""
RemoteExecutor - run commands on targets and classify what happened.

Three kinds of target:
- local: CLIs on this machine (terraform, kubectl, helm, git, gh)
- cloud: AWS API calls made through boto3
- host:  an SSH host (cluster node) reached with a private key file

Every attempt ends in a CommandResult with one of four kinds: OK,
TIMED_OUT, UNREACHABLE or NON_ZERO_EXIT. The first two are transient and
retried within the caller's budget; NON_ZERO_EXIT is returned as-is.

On top of single commands the executor offers:
- broadcast(): the same operation on many targets at once
- poll_until(): bounded polling with a typed result instead of sleep loops
"""

import logging
import os
import shlex
import socket
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, Union

import paramiko
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from kubestage.errors import (
    AbortRequested,
    PartialCompletion,
    PollTimeout,
    RemoteCommandFailed,
    TargetUnreachable,
    TransientRemoteFailure,
)

logger = logging.getLogger(__name__)

Command = Union[str, Sequence[str]]

THROTTLING_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "ProvisionedThroughputExceededException",
    "RequestTimeout",
    "ServiceUnavailable",
    "SlowDown",
}


class TargetKind(str, Enum):
    LOCAL = "local"
    CLOUD = "cloud"
    HOST = "host"


@dataclass(frozen=True)
class Target:
    name: str
    kind: TargetKind
    address: Optional[str] = None
    user: Optional[str] = None
    key_file: Optional[Path] = None
    port: int = 22

    @classmethod
    def local(cls) -> "Target":
        return cls("local", TargetKind.LOCAL)

    @classmethod
    def cloud(cls, region: str) -> "Target":
        return cls(f"aws:{region}", TargetKind.CLOUD, address=region)

    @classmethod
    def host(cls, name: str, address: str, user: str, key_file: Path, port: int = 22) -> "Target":
        return cls(name, TargetKind.HOST, address, user, Path(key_file), port)

    def __str__(self) -> str:
        if self.kind == TargetKind.HOST:
            return f"{self.name} ({self.user}@{self.address})"
        return self.name


@dataclass
class RunOptions:
    timeout: float = 600
    retries: int = 0
    retry_delay: float = 5
    cwd: Optional[Path] = None
    env: Optional[dict[str, str]] = None
    stdin: Optional[str] = None

    def but(self, **changes) -> "RunOptions":
        """Copy with some fields changed."""
        return replace(self, **changes)


class ResultKind(str, Enum):
    OK = "ok"
    TIMED_OUT = "timed_out"
    UNREACHABLE = "unreachable"
    NON_ZERO_EXIT = "non_zero_exit"


TRANSIENT_KINDS = (ResultKind.TIMED_OUT, ResultKind.UNREACHABLE)


@dataclass
class CommandResult:
    kind: ResultKind
    target: str
    command: str
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    value: Any = None
    error_code: Optional[str] = None
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.kind == ResultKind.OK

    @property
    def transient(self) -> bool:
        return self.kind in TRANSIENT_KINDS

    @property
    def output(self) -> str:
        return (self.stdout + self.stderr).strip()

    def summary(self) -> str:
        """One line describing a non-OK result."""
        tail = ""
        lines = [line for line in (self.stderr or self.stdout).strip().splitlines() if line.strip()]
        if lines:
            tail = f": {lines[-1].strip()}"
        if self.kind == ResultKind.NON_ZERO_EXIT:
            if self.error_code:
                return f"{self.error_code}{tail}"
            return f"exit {self.exit_code}{tail}"
        if self.kind == ResultKind.TIMED_OUT:
            return f"timed out{tail}"
        if self.kind == ResultKind.UNREACHABLE:
            return f"unreachable{tail}"
        return "ok"

    def check(self, operation: str) -> "CommandResult":
        """
        Return self if OK, otherwise raise.

        Raises:
            TargetUnreachable: UNREACHABLE after all retries
            TransientRemoteFailure: TIMED_OUT after all retries
            RemoteCommandFailed: NON_ZERO_EXIT
        """
        if self.ok:
            return self
        if self.kind == ResultKind.UNREACHABLE:
            raise TargetUnreachable(operation, self.target, self.summary())
        if self.kind == ResultKind.TIMED_OUT:
            raise TransientRemoteFailure(operation, self.target, self.summary())
        raise RemoteCommandFailed(operation, {self.target: self.summary()})


def _display(command: Command) -> str:
    if isinstance(command, str):
        return command
    return shlex.join(str(part) for part in command)


def _text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode(errors="replace")
    return data


class Transport(ABC):
    """Executes a single attempt of a command on one kind of target."""

    @abstractmethod
    def execute(self, target: Target, command: Command, options: RunOptions) -> CommandResult:
        pass

    def close(self) -> None:
        pass


class LocalTransport(Transport):
    """Runs local CLIs with subprocess. String commands go through bash."""

    def execute(self, target, command, options):
        shell = isinstance(command, str)
        env = {**os.environ, **options.env} if options.env else None
        display = _display(command)
        try:
            proc = subprocess.run(
                command if shell else [str(part) for part in command],
                shell=shell,
                executable="/bin/bash" if shell else None,
                cwd=options.cwd,
                env=env,
                input=options.stdin,
                capture_output=True,
                text=True,
                timeout=options.timeout,
            )
        except FileNotFoundError as e:
            return CommandResult(ResultKind.NON_ZERO_EXIT, target.name, display, stderr=str(e), exit_code=127)
        except subprocess.TimeoutExpired as e:
            return CommandResult(
                ResultKind.TIMED_OUT,
                target.name,
                display,
                stdout=_text(e.stdout),
                stderr=_text(e.stderr) or f"no result after {options.timeout}s",
            )

        kind = ResultKind.OK if proc.returncode == 0 else ResultKind.NON_ZERO_EXIT
        return CommandResult(kind, target.name, display, proc.stdout, proc.stderr, proc.returncode)


class SshTransport(Transport):
    """
    Runs shell commands on SSH hosts with paramiko.

    Connections are cached per (address, port, user) and reused across
    commands; a dropped connection is discarded and re-opened on the next
    attempt.
    """

    def __init__(self, connect_timeout: float = 10, client_factory: Callable[[], Any] = paramiko.SSHClient):
        self.connect_timeout = connect_timeout
        self._client_factory = client_factory
        self._clients: dict[tuple, Any] = {}
        self._lock = threading.Lock()

    def _connect(self, target: Target):
        key = (target.address, target.port, target.user)
        with self._lock:
            client = self._clients.get(key)
        if client is not None:
            transport = client.get_transport()
            if transport is not None and transport.is_active():
                return client
            self._discard(target)

        client = self._client_factory()
        # Fresh cloud instances have host keys nobody has seen yet
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        client.connect(
            target.address,
            port=target.port,
            username=target.user,
            key_filename=str(target.key_file) if target.key_file else None,
            look_for_keys=target.key_file is None,
            allow_agent=target.key_file is None,
            timeout=self.connect_timeout,
            banner_timeout=self.connect_timeout,
            auth_timeout=self.connect_timeout,
        )
        with self._lock:
            self._clients[key] = client
        return client

    def _discard(self, target: Target) -> None:
        with self._lock:
            client = self._clients.pop((target.address, target.port, target.user), None)
        if client is not None:
            client.close()

    @staticmethod
    def _wrap(command: Command, options: RunOptions) -> str:
        script = _display(command)
        if options.cwd:
            script = f"cd {shlex.quote(str(options.cwd))} && {script}"
        if options.env:
            exports = " ".join(f"{k}={shlex.quote(str(v))}" for k, v in options.env.items())
            script = f"export {exports}; {script}"
        return script

    def execute(self, target, command, options):
        display = _display(command)
        try:
            client = self._connect(target)
        except paramiko.AuthenticationException as e:
            return CommandResult(ResultKind.NON_ZERO_EXIT, target.name, display, stderr=f"authentication failed: {e}", exit_code=255)
        except (paramiko.SSHException, OSError) as e:
            # NoValidConnectionsError, refused, timed out, no route: instance not up yet
            logger.debug(f"Cannot connect to {target}: {e}")
            return CommandResult(ResultKind.UNREACHABLE, target.name, display, stderr=str(e))

        try:
            stdin, stdout, stderr = client.exec_command(self._wrap(command, options), timeout=options.timeout)
            if options.stdin is not None:
                stdin.write(options.stdin)
                stdin.channel.shutdown_write()
            out = _text(stdout.read())
            err = _text(stderr.read())
            exit_code = stdout.channel.recv_exit_status()
        except socket.timeout:
            self._discard(target)
            return CommandResult(ResultKind.TIMED_OUT, target.name, display, stderr=f"no result after {options.timeout}s")
        except (paramiko.SSHException, EOFError, OSError) as e:
            self._discard(target)
            return CommandResult(ResultKind.UNREACHABLE, target.name, display, stderr=f"connection lost: {e}")

        kind = ResultKind.OK if exit_code == 0 else ResultKind.NON_ZERO_EXIT
        return CommandResult(kind, target.name, display, out, err, exit_code)

    def close(self):
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            client.close()


def classify_cloud_error(target: Target, description: str, error: Exception) -> CommandResult:
    """Map a botocore exception onto a CommandResult kind."""
    # ConnectTimeoutError subclasses EndpointConnectionError; check it first
    if isinstance(error, (ConnectTimeoutError, ReadTimeoutError)):
        return CommandResult(ResultKind.TIMED_OUT, target.name, description, stderr=str(error))
    if isinstance(error, (EndpointConnectionError, ConnectionClosedError)):
        return CommandResult(ResultKind.UNREACHABLE, target.name, description, stderr=str(error))
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "ClientError")
        kind = ResultKind.TIMED_OUT if code in THROTTLING_CODES else ResultKind.NON_ZERO_EXIT
        return CommandResult(kind, target.name, description, stderr=str(error), error_code=code)
    return CommandResult(ResultKind.NON_ZERO_EXIT, target.name, description, stderr=str(error), error_code=type(error).__name__)


@dataclass
class BroadcastResult:
    """Per-target results of a broadcast, in target order."""

    results: dict[str, CommandResult] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.results.values())

    @property
    def succeeded(self) -> list[str]:
        return [name for name, result in self.results.items() if result.ok]

    @property
    def failed(self) -> list[str]:
        return [name for name, result in self.results.items() if not result.ok]

    def __getitem__(self, name: str) -> CommandResult:
        return self.results[name]

    def raise_for_failures(self, operation: str) -> "BroadcastResult":
        """
        Raises:
            PartialCompletion: Some but not all targets succeeded
            RemoteCommandFailed: No target succeeded
        """
        failed = {name: self.results[name].summary() for name in self.failed}
        if not failed:
            return self
        if self.succeeded:
            raise PartialCompletion(operation, failed, self.succeeded)
        raise RemoteCommandFailed(operation, failed)


class PollStatus(str, Enum):
    SUCCEEDED = "succeeded"
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    ABORTED = "aborted"


@dataclass
class PollResult:
    status: PollStatus
    description: str
    attempts: int
    elapsed: float
    last: Optional[CommandResult] = None

    @property
    def ok(self) -> bool:
        return self.status == PollStatus.SUCCEEDED

    @property
    def value(self) -> Any:
        return self.last.value if self.last is not None else None

    def raise_for_status(self) -> "PollResult":
        """
        Raises:
            PollTimeout: The expected state was never observed
            TargetUnreachable: The target stayed unreachable too long
            AbortRequested: The user aborted while waiting
        """
        target = self.last.target if self.last is not None else None
        last = f"; last: {self.last.summary()}" if self.last is not None and not self.last.ok else ""
        if self.status == PollStatus.TIMEOUT:
            raise PollTimeout(self.description, target, f"not observed after {self.elapsed:.0f}s ({self.attempts} checks){last}")
        if self.status == PollStatus.UNREACHABLE:
            raise TargetUnreachable(self.description, target, f"unreachable for {self.elapsed:.0f}s{last}")
        if self.status == PollStatus.ABORTED:
            raise AbortRequested(self.description)
        return self


class RemoteExecutor:
    """
    Runs commands on local, cloud and SSH targets.

    Args:
        local: Transport for local CLIs
        ssh: Transport for SSH hosts
        abort_event: Set by the CLI's SIGINT handler; checked between
            retries and between poll attempts
        clock: Monotonic clock, injectable for tests
        sleep: Sleep function, injectable for tests. Defaults to waiting on
            the abort event so an abort interrupts the wait.
    """

    def __init__(
        self,
        local: Optional[Transport] = None,
        ssh: Optional[Transport] = None,
        abort_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Any]] = None,
    ):
        self.local = local or LocalTransport()
        self.ssh = ssh or SshTransport()
        self.abort_event = abort_event or threading.Event()
        self._clock = clock
        self._sleep = sleep or self.abort_event.wait

    @property
    def aborted(self) -> bool:
        return self.abort_event.is_set()

    def _transport(self, target: Target) -> Transport:
        if target.kind == TargetKind.LOCAL:
            return self.local
        if target.kind == TargetKind.HOST:
            return self.ssh
        raise ValueError(f"Use call() for cloud target {target}")

    def _with_retries(self, target: Target, description: str, attempt_fn, options: RunOptions) -> CommandResult:
        max_attempts = max(1, options.retries + 1)
        for attempt in range(1, max_attempts + 1):
            result = attempt_fn()
            result.attempts = attempt
            if not result.transient or attempt == max_attempts:
                return result
            logger.warning(
                f"{description} on {target.name}: {result.summary()}; "
                f"retrying in {options.retry_delay}s ({attempt}/{max_attempts})",
                extra={"event": "retry", "target": target.name},
            )
            self._sleep(options.retry_delay)
            if self.aborted:
                raise AbortRequested(description)
        return result

    def run(self, target: Target, command: Command, options: Optional[RunOptions] = None) -> CommandResult:
        """Run a command, retrying transient failures up to options.retries."""
        options = options or RunOptions()
        transport = self._transport(target)
        display = _display(command)
        logger.debug(f"[{target.name}] $ {display}")
        result = self._with_retries(target, display, lambda: transport.execute(target, command, options), options)
        if not result.ok:
            logger.debug(f"[{target.name}] {result.summary()}")
        return result

    def call(
        self,
        target: Target,
        fn: Callable[[], Any],
        options: Optional[RunOptions] = None,
        description: Optional[str] = None,
    ) -> CommandResult:
        """Run a cloud SDK call, classifying botocore errors like command results."""
        options = options or RunOptions()
        description = description or getattr(fn, "__name__", "cloud call")

        def attempt() -> CommandResult:
            try:
                value = fn()
            except (BotoCoreError, ClientError) as e:
                return classify_cloud_error(target, description, e)
            return CommandResult(ResultKind.OK, target.name, description, value=value)

        return self._with_retries(target, description, attempt, options)

    def broadcast(
        self,
        targets: Sequence[Target],
        command: Union[Command, Callable[[Target], Command]],
        options: Optional[RunOptions] = None,
    ) -> BroadcastResult:
        """
        Run a command on every target concurrently.

        ``command`` may be a callable building a per-target command.
        """
        if not targets:
            return BroadcastResult()
        options = options or RunOptions()

        def run_one(target: Target) -> CommandResult:
            cmd = command(target) if callable(command) else command
            return self.run(target, cmd, options)

        with ThreadPoolExecutor(max_workers=len(targets)) as pool:
            futures = [(target, pool.submit(run_one, target)) for target in targets]
            return BroadcastResult({target.name: future.result() for target, future in futures})

    def poll_until(
        self,
        probe: Callable[[], CommandResult],
        predicate: Callable[[CommandResult], bool],
        description: str,
        interval: float,
        timeout: float,
        unreachable_timeout: Optional[float] = None,
    ) -> PollResult:
        """
        Poll ``probe`` until ``predicate`` holds on an OK result.

        UNREACHABLE results count as "not yet" until they persist for
        ``unreachable_timeout`` seconds. Never sleeps past the deadline:
        when the next check would land after it, returns TIMEOUT.
        """
        start = self._clock()
        deadline = start + timeout
        unreachable_since = None
        attempts = 0
        last = None

        while True:
            if self.aborted:
                return PollResult(PollStatus.ABORTED, description, attempts, self._clock() - start, last)

            attempts += 1
            last = probe()
            now = self._clock()
            if last.ok and predicate(last):
                logger.debug(f"{description}: observed after {attempts} checks")
                return PollResult(PollStatus.SUCCEEDED, description, attempts, now - start, last)

            if last.kind == ResultKind.UNREACHABLE:
                if unreachable_since is None:
                    unreachable_since = now
                if unreachable_timeout is not None and now - unreachable_since >= unreachable_timeout:
                    return PollResult(PollStatus.UNREACHABLE, description, attempts, now - start, last)
            else:
                unreachable_since = None

            if now + interval > deadline:
                return PollResult(PollStatus.TIMEOUT, description, attempts, now - start, last)

            logger.debug(f"{description}: not yet ({attempts}), next check in {interval}s")
            self._sleep(interval)

    def close(self) -> None:
        self.local.close()
        self.ssh.close()
