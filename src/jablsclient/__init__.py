# Python JabLS sidecar client
# - Detects the host platform and picks the matching server archive
# - Downloads the archive when the remote Last-Modified marker changed
# - Extracts zip / tar.gz archives into a per-user scratch directory
# - Starts the server process and forwards its output to a logger callback
# - Connects over TCP with exponential backoff, yielding a reader/writer pair
#
# Requires Python 3.10+
from __future__ import annotations

import contextlib
import enum
import json
import os
import platform
import shutil
import socket
import stat
import subprocess
import tarfile
import tempfile
import threading
import time
import zipfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, BinaryIO, Callable, Optional, Sequence

import requests

__all__ = [
    "DEFAULT_HOST",
    "DEFAULT_PORT",
    "ArchiveType",
    "BinMetadata",
    "BinaryProvisioner",
    "Config",
    "DefaultConfig",
    "DownloadError",
    "ExtractionError",
    "JabLSClient",
    "JabLSClientError",
    "MissingArchiveDescriptorError",
    "Platform",
    "ProvisioningError",
    "ServerArchiveInfo",
    "ServerConnectionError",
    "ServerProcess",
    "SpawnError",
    "StreamInfo",
    "UnsupportedPlatformError",
    "backoff_delay",
    "config_from_settings",
    "connect_with_retry",
    "detect_platform",
    "init_jablsclient",
    "needs_redownload",
    "pick_server_info",
    "probe",
    "read_local_metadata",
    "write_local_metadata",
]

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 2087

_SERVER_DIR_NAME = "server-bin"
_METADATA_FILE_NAME = "jabls-download-meta.json"
_ARCHIVE_BASENAME = "jabls-portable"
_DOWNLOAD_CHUNK_SIZE = 64 * 1024

LogFunc = Callable[[Optional[datetime], str, str], None]


class JabLSClientError(Exception):
    pass


class UnsupportedPlatformError(JabLSClientError):
    pass


class MissingArchiveDescriptorError(JabLSClientError):
    pass


class ProvisioningError(JabLSClientError):
    """Raised when the server binaries could not be brought up to date."""


class DownloadError(ProvisioningError):
    pass


class ExtractionError(ProvisioningError):
    pass


class SpawnError(JabLSClientError):
    pass


class ServerConnectionError(JabLSClientError):
    """Raised only when a bounded number of connection attempts ran out."""


class Platform(str, enum.Enum):
    WINDOWS = "windows"
    MACOS_X64 = "macos-x64"
    MACOS_ARM64 = "macos-arm64"
    LINUX_X64 = "linux-x64"
    LINUX_ARM64 = "linux-arm64"


class ArchiveType(str, enum.Enum):
    ZIP = "zip"
    TAR_GZ = "tar.gz"


@dataclass(slots=True, frozen=True)
class ServerArchiveInfo:
    # The platform this archive was built for.
    Platform: Platform
    # Where to download the archive from.
    Url: str
    ArchiveType: ArchiveType
    # Directory inside the extracted archive the server is started from.
    WorkingDir: str
    # Name of the server executable inside WorkingDir.
    Bin: str


@dataclass(slots=True)
class Config:
    # Host and port the server listens on.
    Host: str = DEFAULT_HOST
    Port: int = DEFAULT_PORT
    # Scratch directory holding the extracted server and the download metadata.
    CacheDir: str = field(default_factory=lambda: os.path.join(tempfile.gettempdir(), "jabref"))
    # Timeout in seconds of the single probe for an already running server.
    ProbeTimeoutS: float = 0.5
    # First and largest delay in seconds between connection attempts.
    BackoffStartS: float = 1.0
    BackoffMaxS: float = 3.0
    # Maximum number of connection attempts. If 0, attempts never stop.
    MaxConnectAttempts: int = 0
    # Timeout in seconds for each HTTP request made while provisioning.
    HttpTimeoutS: float = 60.0
    # How long to wait for the server to exit after asking it to terminate.
    StopTimeoutS: float = 5.0
    # If set, this function is called for each log message.
    # timestamp can be None if not known
    Logger: Optional[LogFunc] = None


def DefaultConfig() -> Config:
    return Config(
        Logger=lambda ts, level, msg: print(f"[jabls] {msg}"),
    )


def config_from_settings(settings: Mapping[str, Any], base: Optional[Config] = None) -> Config:
    """Build a Config from editor style settings (``client.port``, ``client.host``).

    Keys missing from ``settings`` keep the value from ``base`` (or the
    defaults when no base is given).
    """
    config = base if base is not None else DefaultConfig()
    host = settings.get("client.host", config.Host)
    port = settings.get("client.port", config.Port)
    if not isinstance(host, str) or not host:
        raise JabLSClientError(f"invalid client.host setting: {host!r}")
    if isinstance(port, bool):
        raise JabLSClientError(f"invalid client.port setting: {port!r}")
    try:
        port_num = int(port)
    except (TypeError, ValueError) as e:
        raise JabLSClientError(f"invalid client.port setting: {port!r}") from e
    if not 0 < port_num < 65536:
        raise JabLSClientError(f"client.port out of range: {port_num}")
    config.Host = host
    config.Port = port_num
    return config


def _log(logger: Optional[LogFunc], level: str, msg: str) -> None:
    if logger:
        logger(datetime.now(timezone.utc), level, msg)


# Platform detection and archive selection


def detect_platform(system: Optional[str] = None, machine: Optional[str] = None) -> Platform:
    os_name = (system if system is not None else platform.system()).lower()
    arch = (machine if machine is not None else platform.machine()).lower()
    is_arm64 = arch in ("arm64", "aarch64")

    if os_name == "windows":
        return Platform.WINDOWS
    if os_name == "darwin":
        return Platform.MACOS_ARM64 if is_arm64 else Platform.MACOS_X64
    if os_name == "linux":
        return Platform.LINUX_ARM64 if is_arm64 else Platform.LINUX_X64
    raise UnsupportedPlatformError(f"unsupported platform: {os_name} / {arch}")


def pick_server_info(plat: Platform, infos: Sequence[ServerArchiveInfo]) -> ServerArchiveInfo:
    for info in infos:
        if info.Platform == plat:
            return info
    raise MissingArchiveDescriptorError(f'no ServerArchiveInfo provided for platform "{plat.value}"')


# Download metadata


@dataclass(slots=True)
class BinMetadata:
    LastModified: Optional[str] = None


def read_local_metadata(path: os.PathLike[str] | str) -> Optional[BinMetadata]:
    """Return the stored metadata, or None if it is missing or unusable."""
    try:
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, ValueError):
        return None
    if not isinstance(raw, dict):
        return None
    last_modified = raw.get("lastModified")
    if last_modified is not None and not isinstance(last_modified, str):
        return None
    return BinMetadata(LastModified=last_modified)


def write_local_metadata(path: os.PathLike[str] | str, meta: BinMetadata) -> None:
    dest = Path(path)
    dest.parent.mkdir(parents=True, exist_ok=True)
    payload: dict[str, str] = {}
    if meta.LastModified is not None:
        payload["lastModified"] = meta.LastModified

    fd, tmp_path = tempfile.mkstemp(prefix=dest.name + ".", suffix=".tmp", dir=dest.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, dest)
    except BaseException:
        with contextlib.suppress(OSError):
            os.remove(tmp_path)
        raise


def needs_redownload(local: Optional[BinMetadata], remote: BinMetadata) -> bool:
    if local is None:
        return True
    if remote.LastModified and local.LastModified:
        return remote.LastModified != local.LastModified
    return False


# Provisioning


def _fetch_remote_metadata(url: str, timeout_s: float, logger: Optional[LogFunc]) -> BinMetadata:
    try:
        resp = requests.head(url, allow_redirects=True, timeout=timeout_s)
    except requests.RequestException as e:
        raise ProvisioningError(f"failed to fetch metadata for {url}: {e}") from e
    if resp.status_code >= 400:
        _log(logger, "WARNING", f"metadata request for {url} returned HTTP status {resp.status_code}")
        return BinMetadata()
    return BinMetadata(LastModified=resp.headers.get("Last-Modified"))


def _download_file(url: str, dest: Path, timeout_s: float) -> None:
    try:
        with requests.get(url, stream=True, allow_redirects=True, timeout=timeout_s) as resp:
            if resp.status_code >= 400:
                raise DownloadError(f"failed to download file: unexpected HTTP status {resp.status_code} for {url}")
            with open(dest, "wb") as f:
                for chunk in resp.iter_content(chunk_size=_DOWNLOAD_CHUNK_SIZE):
                    f.write(chunk)
    except requests.RequestException as e:
        raise DownloadError(f"download {url}: {e}") from e
    except OSError as e:
        raise DownloadError(f"write {dest}: {e}") from e


def _extract_zip(archive: Path, dest: Path) -> None:
    with zipfile.ZipFile(archive) as zf:
        zf.extractall(dest)


def _extract_tar_gz(archive: Path, dest: Path) -> None:
    if not hasattr(tarfile, "data_filter"):
        raise ExtractionError("this Python has no tarfile extraction filters; upgrade to 3.10.12, 3.11.4 or newer")
    # errorlevel=2 turns every extraction problem into an exception
    with tarfile.open(archive, mode="r:gz", errorlevel=2) as tf:
        tf.extractall(dest, filter="data")


def _extract_archive(archive: Path, archive_type: ArchiveType, dest: Path) -> None:
    try:
        if archive_type == ArchiveType.ZIP:
            _extract_zip(archive, dest)
        else:
            _extract_tar_gz(archive, dest)
    except (zipfile.BadZipFile, tarfile.TarError, EOFError, OSError) as e:
        raise ExtractionError(f"extract {archive.name}: {e}") from e
    finally:
        with contextlib.suppress(OSError):
            archive.unlink()


def _ensure_executable(path: Path) -> None:
    if os.name == "nt":
        return
    try:
        mode = path.stat().st_mode
        path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    except FileNotFoundError as e:
        raise ExtractionError(f"server executable not found in archive: {path}") from e


class BinaryProvisioner:
    """Keeps the extracted server tree in sync with the remote archive.

    The tree and the metadata file are only ever written from here. A
    download replaces the whole tree, and the metadata is only updated once
    the new tree is extracted and runnable, so a failed install is retried on
    the next call instead of being mistaken for an up to date one.
    """

    def __init__(self, info: ServerArchiveInfo, cache_dir: os.PathLike[str] | str, config: Config) -> None:
        self.info = info
        self.server_root_dir = Path(cache_dir) / _SERVER_DIR_NAME
        self.metadata_file = Path(cache_dir) / _METADATA_FILE_NAME
        self._config = config

    @property
    def executable_path(self) -> Path:
        return self.server_root_dir / self.info.WorkingDir / self.info.Bin

    def ensure_latest(self) -> bool:
        """Download the server if needed. Returns True if a download happened."""
        logger = self._config.Logger
        remote = _fetch_remote_metadata(self.info.Url, self._config.HttpTimeoutS, logger)
        local = read_local_metadata(self.metadata_file)

        if not needs_redownload(local, remote):
            self.server_root_dir.mkdir(parents=True, exist_ok=True)
            _log(logger, "DEBUG", f"server binaries up to date (last modified {remote.LastModified})")
            return False

        _log(logger, "INFO", f"downloading server from {self.info.Url}")
        archive = self._download_archive()
        _extract_archive(archive, self.info.ArchiveType, self.server_root_dir)
        _ensure_executable(self.executable_path)
        write_local_metadata(self.metadata_file, BinMetadata(LastModified=remote.LastModified))
        _log(logger, "INFO", f"server installed into {self.server_root_dir}")
        return True

    def _download_archive(self) -> Path:
        shutil.rmtree(self.server_root_dir, ignore_errors=True)
        self.server_root_dir.mkdir(parents=True, exist_ok=True)
        archive = self.server_root_dir / f"{_ARCHIVE_BASENAME}.{self.info.ArchiveType.value}"
        with contextlib.suppress(OSError):
            archive.unlink()
        _download_file(self.info.Url, archive, self._config.HttpTimeoutS)
        return archive


# Server process


def _stream_output_logs(stream: Any, level: str, logger: Optional[LogFunc]) -> None:
    for raw in stream:
        line = raw.rstrip()
        if line:
            _log(logger, level, f"[JabLS process] {line}")


class ServerProcess:
    """Tracks at most one running server process."""

    def __init__(self, logger: Optional[LogFunc] = None) -> None:
        self._logger = logger
        self._lock = threading.Lock()
        self._process: Optional[subprocess.Popen[str]] = None

    @property
    def process(self) -> Optional[subprocess.Popen[str]]:
        return self._process

    def is_running(self) -> bool:
        with self._lock:
            return self._process is not None and self._process.poll() is None

    def ensure_running(self, info: ServerArchiveInfo, server_root_dir: os.PathLike[str] | str) -> subprocess.Popen[str]:
        with self._lock:
            if self._process is not None and self._process.poll() is None:
                return self._process

            working_dir = Path(server_root_dir) / info.WorkingDir
            command = working_dir / info.Bin
            try:
                proc = subprocess.Popen(
                    [str(command)],
                    cwd=str(working_dir),
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    encoding="utf-8",
                    errors="replace",
                )
            except OSError as e:
                self._process = None
                _log(self._logger, "ERROR", f"[JabLS process] failed to start server: {e}")
                raise SpawnError(f"failed to start {command}: {e}") from e
            self._process = proc

        _log(self._logger, "INFO", f"[JabLS process] started pid={proc.pid}")
        assert proc.stdout is not None and proc.stderr is not None
        threading.Thread(
            target=_stream_output_logs, args=(proc.stdout, "INFO", self._logger), name="jabls-stdout", daemon=True
        ).start()
        threading.Thread(
            target=_stream_output_logs, args=(proc.stderr, "ERROR", self._logger), name="jabls-stderr", daemon=True
        ).start()
        threading.Thread(target=self._reap, args=(proc,), name="jabls-reaper", daemon=True).start()
        return proc

    def _reap(self, proc: subprocess.Popen[str]) -> None:
        rc = proc.wait()
        _log(self._logger, "INFO", f"[JabLS process] server exited code={rc}")
        with self._lock:
            if self._process is proc:
                self._process = None

    def stop(self, timeout_s: Optional[float] = 5.0) -> None:
        with self._lock:
            proc = self._process
            self._process = None
        if proc is None:
            return
        if proc.poll() is None:
            proc.terminate()
            try:
                proc.wait(timeout=timeout_s)
            except subprocess.TimeoutExpired:
                _log(self._logger, "WARNING", f"[JabLS process] pid={proc.pid} did not exit, killing it")
                proc.kill()
                proc.wait()


# Connections


@dataclass(slots=True)
class StreamInfo:
    reader: BinaryIO
    writer: BinaryIO
    sock: socket.socket

    def close(self) -> None:
        for f in (self.writer, self.reader):
            with contextlib.suppress(OSError):
                f.close()
        with contextlib.suppress(OSError):
            self.sock.close()


def _stream_from_socket(sock: socket.socket) -> StreamInfo:
    return StreamInfo(reader=sock.makefile("rb"), writer=sock.makefile("wb"), sock=sock)


def probe(host: str, port: int, timeout_s: float = 0.5) -> bool:
    """Return True if something accepts connections on host:port.

    ``timeout_s`` bounds the whole probe, shared across every address the
    host resolves to (``localhost`` usually gives both ::1 and 127.0.0.1).
    """
    deadline = time.monotonic() + timeout_s
    try:
        addrs = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except OSError:
        return False
    for family, type_, proto, _, addr in addrs:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        sock = socket.socket(family, type_, proto)
        try:
            sock.settimeout(remaining)
            sock.connect(addr)
            return True
        except OSError:
            continue
        finally:
            with contextlib.suppress(OSError):
                sock.close()
    return False


def backoff_delay(attempt: int, start_s: float, max_s: float) -> float:
    return min(max_s, start_s * 2 ** (attempt - 1))


def connect_with_retry(
    host: str,
    port: int,
    backoff_start_s: float = 1.0,
    backoff_max_s: float = 3.0,
    max_attempts: int = 0,
    quit_event: Optional[threading.Event] = None,
    logger: Optional[LogFunc] = None,
) -> StreamInfo:
    """Connect to host:port, retrying with exponential backoff.

    With the default ``max_attempts=0`` this keeps trying until a connection
    is made. ``quit_event`` aborts the loop between attempts.
    """
    wait_event = quit_event if quit_event is not None else threading.Event()
    attempt = 0
    while True:
        sock: Optional[socket.socket] = None
        try:
            sock = socket.create_connection((host, port))
            sock.settimeout(None)
            return _stream_from_socket(sock)
        except OSError as e:
            if sock is not None:
                with contextlib.suppress(OSError):
                    sock.close()
            attempt += 1
            if max_attempts > 0 and attempt >= max_attempts:
                raise ServerConnectionError(f"could not connect to {host}:{port} after {attempt} attempts: {e}") from e
            delay = backoff_delay(attempt, backoff_start_s, backoff_max_s)
            _log(logger, "DEBUG", f"connect to {host}:{port} failed ({e}); attempt {attempt}, retrying in {delay:.2f}s")
        if wait_event.wait(delay):
            raise JabLSClientError("jabls client has quit")


# Client


class JabLSClient:
    def __init__(self, config: Config, info: ServerArchiveInfo, plat: Platform) -> None:
        self.config = config
        self.platform = plat
        self.info = info
        self.provisioner = BinaryProvisioner(info, config.CacheDir, config)
        self.server = ServerProcess(config.Logger)
        self._ensure_lock = threading.Lock()
        # Orders spawning against close(): a spawn either happens before close
        # stops the server or is refused after it.
        self._state_lock = threading.Lock()
        self._quit_event = threading.Event()

    @property
    def server_root_dir(self) -> Path:
        return self.provisioner.server_root_dir

    def prepare_server_binaries(self) -> bool:
        try:
            return self.provisioner.ensure_latest()
        except ProvisioningError as e:
            _log(self.config.Logger, "ERROR", f"failed to prepare server binaries: {e}")
            raise

    def ensure_server_connection(self, host: Optional[str] = None, port: Optional[int] = None) -> StreamInfo:
        if self._quit_event.is_set():
            raise JabLSClientError("jabls client has quit")
        host = host if host is not None else self.config.Host
        port = port if port is not None else self.config.Port

        with self._ensure_lock:
            if probe(host, port, self.config.ProbeTimeoutS):
                _log(self.config.Logger, "DEBUG", f"found server already listening on {host}:{port}")
            else:
                self.prepare_server_binaries()
                with self._state_lock:
                    if self._quit_event.is_set():
                        raise JabLSClientError("jabls client has quit")
                    self.server.ensure_running(self.info, self.server_root_dir)

            try:
                stream = connect_with_retry(
                    host,
                    port,
                    backoff_start_s=self.config.BackoffStartS,
                    backoff_max_s=self.config.BackoffMaxS,
                    max_attempts=self.config.MaxConnectAttempts,
                    quit_event=self._quit_event,
                    logger=self.config.Logger,
                )
            except JabLSClientError:
                if self._quit_event.is_set():
                    self.stop_server_process()
                raise
            if self._quit_event.is_set():
                stream.close()
                self.stop_server_process()
                raise JabLSClientError("jabls client has quit")
            return stream

    def stop_server_process(self, timeout_s: Optional[float] = None) -> None:
        self.server.stop(timeout_s if timeout_s is not None else self.config.StopTimeoutS)

    def close(self) -> None:
        with self._state_lock:
            self._quit_event.set()
        self.stop_server_process()


def init_jablsclient(config: Config, infos: Sequence[ServerArchiveInfo]) -> JabLSClient:
    """Create a client for the current platform.

    Fails with UnsupportedPlatformError or MissingArchiveDescriptorError
    before touching the network or the filesystem.
    """
    try:
        plat = detect_platform()
        info = pick_server_info(plat, infos)
    except JabLSClientError as e:
        _log(config.Logger, "ERROR", str(e))
        raise
    return JabLSClient(config, info, plat)
