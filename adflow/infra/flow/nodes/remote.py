# adflow/infra/flow/nodes/remote.py
"""
Remote file clients used by the file transfer node.

SFTP goes through paramiko, plain FTP through ``ftplib``. Both expose the
same small surface so the node (and tests) only depend on
``RemoteFileClient``.
"""
from __future__ import annotations

import ftplib
import io
import logging
import posixpath
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol

import paramiko

from adflow.infra.errors import RemoteTransferError

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 30

# errors raised by the underlying clients
REMOTE_ERRORS = (OSError, ftplib.Error, paramiko.SSHException)


@dataclass
class HostSettings:
    """Credentials of a remote host."""
    host: str
    username: str
    port: Optional[int] = None
    authentication_type: str = "password"
    password: Optional[str] = None
    pem: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> HostSettings:
        port = raw.get("port")
        return cls(
            host=raw.get("host") or "",
            username=raw.get("username") or "",
            port=int(port) if port not in (None, "") else None,
            authentication_type=raw.get("authentication_type") or "password",
            password=raw.get("password"),
            pem=raw.get("pem"),
        )

    @property
    def uses_sftp(self) -> bool:
        return self.port == 22 or self.authentication_type == "pem"


class HostResolver(Protocol):
    """Resolves a registered host id to its credentials."""

    def resolve(self, host_id: Any) -> HostSettings:
        ...


class RemoteFileClient(Protocol):
    def list_dir(self, path: str) -> List[str]:
        """Return the entry names (not paths) of a remote directory."""
        ...

    def download(self, remote_path: str, local_path: str) -> None:
        ...

    def upload(self, local_path: str, remote_path: str) -> None:
        ...

    def ensure_dir(self, path: str) -> None:
        ...

    def close(self) -> None:
        ...


ClientFactory = Callable[[HostSettings], RemoteFileClient]


def parent_chain(path: str) -> List[str]:
    """
    Every directory from the top of ``path`` down to ``path`` itself.

    ``parent_chain("/data/in/daily")`` is ``["/data", "/data/in", "/data/in/daily"]``.
    """
    chain: List[str] = []
    current = "/" if path.startswith("/") else ""
    for part in (p for p in path.split("/") if p):
        current = posixpath.join(current, part) if current else part
        chain.append(current)
    return chain


# ============================================================
#                   SFTP
# ============================================================
class SFTPClient:
    """RemoteFileClient over SSH using paramiko."""

    def __init__(self, settings: HostSettings):
        self._ssh = paramiko.SSHClient()
        self._ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        connect_args: Dict[str, Any] = {
            "hostname": settings.host,
            "port": settings.port or 22,
            "username": settings.username,
            "timeout": CONNECT_TIMEOUT,
            "allow_agent": False,
            "look_for_keys": False,
        }
        if settings.authentication_type == "pem":
            connect_args["pkey"] = paramiko.RSAKey.from_private_key(io.StringIO(settings.pem or ""))
        else:
            connect_args["password"] = settings.password
        self._ssh.connect(**connect_args)
        self._sftp = self._ssh.open_sftp()

    def list_dir(self, path: str) -> List[str]:
        return self._sftp.listdir(path)

    def download(self, remote_path: str, local_path: str) -> None:
        self._sftp.get(remote_path, local_path)

    def upload(self, local_path: str, remote_path: str) -> None:
        self._sftp.put(local_path, remote_path)

    def ensure_dir(self, path: str) -> None:
        for directory in parent_chain(path):
            try:
                self._sftp.stat(directory)
            except FileNotFoundError:
                self._sftp.mkdir(directory)

    def close(self) -> None:
        self._sftp.close()
        self._ssh.close()


# ============================================================
#                   FTP
# ============================================================
class FTPClient:
    """RemoteFileClient over plain FTP (passive mode)."""

    def __init__(self, settings: HostSettings):
        self._ftp = ftplib.FTP()
        self._ftp.connect(settings.host, settings.port or 21, timeout=CONNECT_TIMEOUT)
        self._ftp.login(settings.username, settings.password or "")
        self._ftp.set_pasv(True)

    def list_dir(self, path: str) -> List[str]:
        return [posixpath.basename(name) for name in self._ftp.nlst(path)]

    def download(self, remote_path: str, local_path: str) -> None:
        with open(local_path, "wb") as fh:
            self._ftp.retrbinary(f"RETR {remote_path}", fh.write)

    def upload(self, local_path: str, remote_path: str) -> None:
        with open(local_path, "rb") as fh:
            self._ftp.storbinary(f"STOR {remote_path}", fh)

    def ensure_dir(self, path: str) -> None:
        current = self._ftp.pwd()
        for directory in parent_chain(path):
            try:
                self._ftp.cwd(directory)
            except ftplib.error_perm:
                self._ftp.mkd(directory)
            finally:
                self._ftp.cwd(current)

    def close(self) -> None:
        try:
            self._ftp.quit()
        except ftplib.all_errors:
            self._ftp.close()


def connect(settings: HostSettings) -> RemoteFileClient:
    """
    Open a client for ``settings``: SFTP for port 22 or key authentication, FTP otherwise.

    Raises:
        RemoteTransferError: If the connection cannot be established
    """
    protocol = "sftp" if settings.uses_sftp else "ftp"
    logger.debug(f"Connecting: protocol={protocol}, host={settings.host}, port={settings.port}")
    try:
        if settings.uses_sftp:
            return SFTPClient(settings)
        return FTPClient(settings)
    except REMOTE_ERRORS as e:
        raise RemoteTransferError(f"Could not connect to {settings.host} over {protocol}: {e}") from e
