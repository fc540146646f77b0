# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/utils/ssh_runner.py

from __future__ import annotations

import logging
import os
import posixpath
import socket
import time
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, Optional, Tuple

import paramiko

from nodefleet.errors import SSHCommandError
from nodefleet.utils.retry import retry

if TYPE_CHECKING:
    from nodefleet.bootstrap.node.models import Host

log = logging.getLogger("nodefleet")

LOCALHOST = "127.0.0.1"

# Messages paramiko raises when the peer drops the connection mid-handshake,
# typically sshd still starting up on a fresh instance.
_HANDSHAKE_MARKERS = (
    "error reading ssh protocol banner",
    "no existing session",
    "connection reset by peer",
    "eof during negotiation",
)


def _q(s: str) -> str:
    """
    Quote for bash -lc.
    """
    return "'" + s.replace("'", "'\"'\"'") + "'"


def _env_prefix(env: Optional[Dict[str, str]]) -> str:
    if not env:
        return ""
    return "env " + " ".join(f"{k}={_q(str(v))}" for k, v in sorted(env.items())) + " "


class SSHRunner:
    """
    One open SSH session to a host: commands, SFTP transfers, and
    HTTP requests tunnelled to a port on the remote loopback.
    """

    def __init__(self, client: paramiko.SSHClient, label: str = "ssh"):
        self.client = client
        self.label = label

    def run(
        self,
        cmd: str,
        *,
        sudo: bool = False,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> tuple[int, str, str]:
        shell = f"{_env_prefix(env)}bash -lc {_q(cmd)}"
        if sudo:
            shell = f"sudo -H -E {shell}"

        log.debug("[%s] $ %s", self.label, cmd if len(cmd) < 200 else cmd[:200] + "...")
        stdin, stdout, stderr = self.client.exec_command(shell, timeout=timeout)
        out = stdout.read().decode("utf-8", errors="replace")
        err = stderr.read().decode("utf-8", errors="replace")
        rc = stdout.channel.recv_exit_status()
        if out.strip():
            log.debug("[%s][stdout]\n%s", self.label, out.rstrip())
        if err.strip():
            log.debug("[%s][stderr]\n%s", self.label, err.rstrip())
        return rc, out, err

    def check(self, cmd: str, **kw) -> str:
        rc, out, err = self.run(cmd, **kw)
        if rc != 0:
            raise SSHCommandError(cmd, rc, out, err)
        return out

    def run_script(
        self,
        body: str,
        *,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """Run a whole bash script; non-zero exit raises SSHCommandError."""
        return self.check(body, env=env, timeout=timeout)

    def put_text(self, content: str, remote_path: str, *, sudo: bool = False) -> None:
        if sudo:
            tmp = f"/tmp/.nodefleet.tmp.{os.getpid()}.{posixpath.basename(remote_path)}"
            self.put_text(content, tmp)
            self.check(f"mv {tmp} {remote_path}", sudo=True)
            return

        sftp = self.client.open_sftp()
        try:
            with sftp.open(remote_path, "w") as f:
                f.write(content)
        finally:
            sftp.close()

    def put_file(self, local_path: str | Path, remote_path: str, *, timeout: Optional[float] = None) -> None:
        sftp = self.client.open_sftp()
        try:
            if timeout:
                sftp.get_channel().settimeout(timeout)
            sftp.put(str(local_path), str(remote_path))
        finally:
            sftp.close()

    def get_file(self, remote_path: str, local_path: str | Path, *, timeout: Optional[float] = None) -> Path:
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        sftp = self.client.open_sftp()
        try:
            if timeout:
                sftp.get_channel().settimeout(timeout)
            sftp.get(str(remote_path), str(local_path))
        finally:
            sftp.close()
        return local_path

    def put_dir(self, local_dir: Path, remote_dir: str) -> None:
        """
        Recursively upload a directory to the remote host using SFTP.
        """
        sftp = self.client.open_sftp()
        try:
            self._put_dir_recursive(sftp, Path(local_dir), remote_dir)
        finally:
            sftp.close()
        log.debug("[%s] uploaded directory %s -> %s", self.label, local_dir, remote_dir)

    def _put_dir_recursive(self, sftp, local: Path, remote: str):
        try:
            sftp.mkdir(remote)
        except IOError:
            pass  # already exists

        for item in sorted(local.iterdir()):
            rpath = posixpath.join(remote, item.name)
            if item.is_dir():
                self._put_dir_recursive(sftp, item, rpath)
            else:
                sftp.put(str(item), rpath)

    def forward_http(
        self,
        request: bytes,
        *,
        port: int,
        timeout: float = 10.0,
    ) -> Tuple[str, bytes]:
        """
        Send a raw HTTP/1.1 request to LOCALHOST:port on the remote side
        through a direct-tcpip channel. Returns (status_line, body).
        """
        transport = self.client.get_transport()
        if transport is None or not transport.is_active():
            raise paramiko.SSHException("No existing session")
        chan = transport.open_channel("direct-tcpip", (LOCALHOST, port), (LOCALHOST, 0), timeout=timeout)
        try:
            chan.settimeout(timeout)
            chan.sendall(request)
            chunks = []
            while True:
                try:
                    data = chan.recv(65536)
                except socket.timeout:
                    break
                if not data:
                    break
                chunks.append(data)
                if _http_complete(b"".join(chunks)):
                    break
        finally:
            chan.close()
        return _split_http_response(b"".join(chunks))

    def close(self) -> None:
        self.client.close()


def _headers(head: bytes) -> Dict[bytes, bytes]:
    headers: Dict[bytes, bytes] = {}
    for line in head.split(b"\r\n")[1:]:
        name, _, value = line.partition(b":")
        headers[name.strip().lower()] = value.strip()
    return headers


def _is_chunked(headers: Dict[bytes, bytes]) -> bool:
    return b"chunked" in headers.get(b"transfer-encoding", b"").lower()


def _dechunk(body: bytes) -> Optional[bytes]:
    """Decoded body of a chunked reply, or None while the last chunk is still missing."""
    out = []
    pos = 0
    while True:
        eol = body.find(b"\r\n", pos)
        if eol < 0:
            return None
        size_field = body[pos:eol].split(b";", 1)[0].strip()
        try:
            size = int(size_field, 16)
        except ValueError:
            raise paramiko.SSHException(f"malformed chunk size {size_field!r} in HTTP response through tunnel")
        start = eol + 2
        if size == 0:
            # optional trailers, then an empty line
            rest = body[start:]
            if rest.startswith(b"\r\n") or b"\r\n\r\n" in rest:
                return b"".join(out)
            return None
        end = start + size
        if len(body) < end + 2:
            return None
        out.append(body[start:end])
        pos = end + 2


def _split_http_response(raw: bytes) -> Tuple[str, bytes]:
    head, sep, body = raw.partition(b"\r\n\r\n")
    if not sep:
        raise paramiko.SSHException("incomplete HTTP response through tunnel")
    status_line = head.split(b"\r\n", 1)[0].decode("latin-1")
    if _is_chunked(_headers(head)):
        decoded = _dechunk(body)
        if decoded is None:
            raise paramiko.SSHException("incomplete chunked HTTP response through tunnel")
        body = decoded
    return status_line, body


def _http_complete(raw: bytes) -> bool:
    head, sep, body = raw.partition(b"\r\n\r\n")
    if not sep:
        return False
    headers = _headers(head)
    if _is_chunked(headers):
        return _dechunk(body) is not None
    length = headers.get(b"content-length")
    if length is None:
        # no framing: the peer closing the channel ends the body
        return False
    try:
        return len(body) >= int(length)
    except ValueError:
        return False


def _load_pkey(key_path: str):
    for key_cls in (
        paramiko.Ed25519Key,
        paramiko.RSAKey,
        paramiko.ECDSAKey,
    ):
        try:
            return key_cls.from_private_key_file(key_path)
        except paramiko.SSHException:
            continue
    raise paramiko.SSHException(f"Unsupported private key format for {key_path}")


def open_ssh(host: "Host", *, connect_timeout: float = 30.0) -> SSHRunner:
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    pkey = None
    if host.pkey_path:
        pkey = _load_pkey(str(host.pkey_path))

    client.connect(
        hostname=host.address,
        port=host.port,
        username=host.username,
        pkey=pkey,
        timeout=connect_timeout,
        banner_timeout=connect_timeout,
        auth_timeout=connect_timeout,
        allow_agent=pkey is None,
        look_for_keys=False,
    )

    return SSHRunner(client, label=host.node_id)


Connector = Callable[..., SSHRunner]


def is_handshake_transient_error(exc: BaseException) -> bool:
    """
    True for failures where the peer closed the connection during the SSH
    handshake. Authentication failures and refused connections are not.
    """
    if isinstance(exc, paramiko.AuthenticationException):
        return False
    if isinstance(exc, (EOFError, ConnectionResetError)):
        return True
    if isinstance(exc, paramiko.SSHException):
        msg = str(exc).lower()
        return any(m in msg for m in _HANDSHAKE_MARKERS)
    return False


def connect_with_retry(
    host: "Host",
    connector: Connector = open_ssh,
    *,
    connect_timeout: float = 30.0,
    pause_s: float = 5.0,
    sleep: Callable[[float], None] = time.sleep,
) -> SSHRunner:
    """
    Open a session, retrying exactly once after *pause_s* when the first
    attempt died during the handshake.
    """

    def _on_retry(attempt: int, exc: BaseException) -> None:
        log.info("[%s] SSH handshake dropped (%s), retrying in %ss", host.node_id, exc, pause_s)

    @retry(
        retries=2,
        delay=pause_s,
        retry_on=(paramiko.SSHException, EOFError, ConnectionResetError),
        retry_if=is_handshake_transient_error,
        on_retry=_on_retry,
        sleep=sleep,
        reraise=True,
    )
    def _connect() -> SSHRunner:
        return connector(host, connect_timeout=connect_timeout)

    return _connect()
