import asyncio
import contextlib
import os
import shutil
import sys
from typing import Protocol, Sequence

import structlog

from quotawatch.errors import FetchFailed, OAuthFailed

logger = structlog.get_logger()

# default timeout for helper processes, in seconds
_DEFAULT_COMMAND_TIMEOUT = 20.0


async def run_command(
    argv: "Sequence[str]",
    timeout: "float" = _DEFAULT_COMMAND_TIMEOUT,
) -> "str":
    """
    runs a helper process and returns its stripped stdout.
    Raises FetchFailed when the process cannot be started,
    times out or exits non-zero.
    """
    logger.debug("run_command", argv=argv[0])
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as err:
        raise FetchFailed(f"could not start {argv[0]}: {err}") from err

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError as err:
        await _reap(proc)
        raise FetchFailed(f"{argv[0]} timed out after {timeout}s") from err
    except asyncio.CancelledError:
        # don't leave the helper running behind a cancelled fetch
        await asyncio.shield(_reap(proc))
        raise

    if proc.returncode != 0:
        message = stderr.decode("utf-8", errors="replace").strip()
        raise FetchFailed(f"{argv[0]} exited with {proc.returncode}: {message}")

    return stdout.decode("utf-8", errors="replace").strip()


async def _reap(proc: "asyncio.subprocess.Process") -> "None":
    # the helper may already have exited on its own
    with contextlib.suppress(ProcessLookupError):
        proc.kill()
    await proc.wait()


class CredentialSource(Protocol):
    """
    CredentialSource returns the raw credentials document of
    a provider. Parsing is left to the strategy.
    """

    def exists(self) -> "bool": ...

    async def read(self) -> "str": ...


class KeychainCredentialSource:
    """
    reads a generic password from the macOS keychain through
    the `security` helper. The helper is already trusted by the
    keychain, so no permission prompt is shown.
    """

    SECURITY_PATH = "/usr/bin/security"

    def __init__(self, services: "Sequence[str]") -> "None":
        self._services = tuple(services)

    def exists(self) -> "bool":
        return sys.platform == "darwin" and os.path.exists(self.SECURITY_PATH)

    async def read(self) -> "str":
        last_error: "Exception | None" = None
        for service in self._services:
            try:
                text = await run_command(
                    [self.SECURITY_PATH, "find-generic-password", "-s", service, "-w"]
                )
            except FetchFailed as err:
                last_error = err
                logger.debug("keychain_lookup_failed", service=service)
                continue

            if not text:
                last_error = OAuthFailed(f'empty keychain response for "{service}"')
                continue
            return text

        raise OAuthFailed(f"keychain lookup failed: {last_error}")


class FileCredentialSource:
    def __init__(self, path: "str") -> "None":
        self._path = os.path.expanduser(path)

    @property
    def path(self) -> "str":
        return self._path

    def exists(self) -> "bool":
        return os.path.isfile(self._path)

    async def read(self) -> "str":
        try:
            text = await asyncio.to_thread(_read_text, self._path)
        except OSError as err:
            raise OAuthFailed(f"cannot read {self._path}: {err}") from err

        if not text.strip():
            raise OAuthFailed(f"{self._path} is empty")
        return text


class ChainedCredentialSource:
    """
    tries each source in order and returns the first readable
    document. Used to prefer the keychain and fall back to the
    credentials file.
    """

    def __init__(self, sources: "Sequence[CredentialSource]") -> "None":
        self._sources = tuple(sources)

    def exists(self) -> "bool":
        return any(s.exists() for s in self._sources)

    async def read(self) -> "str":
        last_error: "Exception" = OAuthFailed("no credential source present")
        for source in self._sources:
            if not source.exists():
                continue
            try:
                return await source.read()
            except OAuthFailed as err:
                last_error = err
        raise last_error


class CommandSource:
    """
    CommandSource runs a local CLI and returns its output text.
    """

    def __init__(
        self,
        argv: "Sequence[str]",
        timeout: "float" = _DEFAULT_COMMAND_TIMEOUT,
    ) -> "None":
        self._argv = tuple(argv)
        self._timeout = timeout

    def exists(self) -> "bool":
        return shutil.which(self._argv[0]) is not None

    async def read(self) -> "str":
        return await run_command(self._argv, timeout=self._timeout)


def _read_text(path: "str") -> "str":
    with open(path, encoding="utf-8") as f:
        return f.read()
