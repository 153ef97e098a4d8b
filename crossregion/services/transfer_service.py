import asyncio
import logging
import os
import posixpath
import socket
from pathlib import Path
from typing import Callable

import paramiko

from crossregion.config.config import KEY_DIR, REMOTE_USER, SSH_TIMEOUT
from crossregion.services.errors import TransferError
from crossregion.services.key_pair_service import key_file_path

SKIPPED_NAMES = {"__pycache__", ".pytest_cache", ".git"}


class TransferGateway:
    """
    Remote copy and remote execution over key-authenticated SSH.

    paramiko is blocking, so every call runs in a worker thread and the
    orchestrator's event loop stays free for the other regions.
    """

    def __init__(
        self,
        user: str = REMOTE_USER,
        key_dir: str = KEY_DIR,
        timeout: float = SSH_TIMEOUT,
        key_path_for: Callable[[str], Path] = None,
    ):
        self.user = user
        self.timeout = timeout
        self._key_path_for = key_path_for or (lambda region: key_file_path(region, key_dir))

    def _connect(self, region: str, host: str) -> paramiko.SSHClient:
        key_path = self._key_path_for(region)
        if not key_path.exists():
            raise TransferError("Connect", "MissingKeyFile", f"No private key at {key_path} for {region}")
        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            ssh.connect(
                hostname=host,
                username=self.user,
                key_filename=str(key_path),
                timeout=self.timeout,
                banner_timeout=self.timeout,
            )
        except paramiko.ssh_exception.AuthenticationException as e:
            ssh.close()
            raise TransferError("Connect", "AuthenticationFailed", f"{host}: {e}")
        except (paramiko.ssh_exception.SSHException, socket.error) as e:
            ssh.close()
            raise TransferError("Connect", "ConnectionFailed", f"{host}: {e}")
        return ssh

    def _with_sftp(self, region: str, host: str, operation: str, action) -> None:
        ssh = self._connect(region, host)
        try:
            with ssh.open_sftp() as sftp:
                action(sftp)
        except (paramiko.ssh_exception.SSHException, OSError) as e:
            raise TransferError(operation, "TransferFailed", f"{host}: {e}")
        finally:
            ssh.close()

    @staticmethod
    def _ensure_remote_dir(sftp, remote_path: str) -> None:
        current = ""
        for part in remote_path.strip("/").split("/"):
            current = f"{current}/{part}"
            try:
                sftp.stat(current)
            except FileNotFoundError:
                sftp.mkdir(current)

    def _upload_directory_sync(self, region: str, host: str, local_path: str, remote_path: str) -> None:
        def action(sftp):
            for root, dirs, files in os.walk(local_path):
                dirs[:] = [name for name in dirs if name not in SKIPPED_NAMES]
                relative = os.path.relpath(root, local_path)
                target = remote_path if relative == "." else posixpath.join(remote_path, *relative.split(os.sep))
                self._ensure_remote_dir(sftp, target)
                for name in files:
                    if name.endswith(".pyc"):
                        continue
                    sftp.put(os.path.join(root, name), posixpath.join(target, name))

        self._with_sftp(region, host, "UploadDirectory", action)

    def _upload_file_sync(self, region: str, host: str, local_path: str, remote_path: str) -> None:
        def action(sftp):
            self._ensure_remote_dir(sftp, posixpath.dirname(remote_path))
            sftp.put(str(local_path), remote_path)

        self._with_sftp(region, host, "UploadFile", action)

    def _download_file_sync(self, region: str, host: str, remote_path: str, local_path: str) -> None:
        Path(local_path).parent.mkdir(parents=True, exist_ok=True)
        self._with_sftp(region, host, "DownloadFile", lambda sftp: sftp.get(remote_path, str(local_path)))

    def _run_remote_command_sync(self, region: str, host: str, command: str) -> str:
        ssh = self._connect(region, host)
        try:
            _, stdout, stderr = ssh.exec_command(command, timeout=self.timeout)
            exit_status = stdout.channel.recv_exit_status()
            output = stdout.read().decode(errors="replace")
            if exit_status != 0:
                raise TransferError(
                    "RunRemoteCommand",
                    f"ExitStatus{exit_status}",
                    stderr.read().decode(errors="replace").strip() or output.strip(),
                )
            return output
        except (paramiko.ssh_exception.SSHException, socket.timeout) as e:
            raise TransferError("RunRemoteCommand", "ExecFailed", f"{host}: {e}")
        finally:
            ssh.close()

    async def upload_directory(self, region: str, host: str, local_path: str, remote_path: str) -> None:
        logging.info(f"Uploading {local_path} to {host}:{remote_path}")
        await asyncio.to_thread(self._upload_directory_sync, region, host, local_path, remote_path)

    async def upload_file(self, region: str, host: str, local_path: str, remote_path: str) -> None:
        logging.info(f"Uploading {local_path} to {host}:{remote_path}")
        await asyncio.to_thread(self._upload_file_sync, region, host, local_path, remote_path)

    async def download_file(self, region: str, host: str, remote_path: str, local_path: str) -> None:
        logging.info(f"Downloading {host}:{remote_path} to {local_path}")
        await asyncio.to_thread(self._download_file_sync, region, host, remote_path, local_path)

    async def run_remote_command(self, region: str, host: str, command: str) -> str:
        logging.info(f"Running on {host}: {command}")
        return await asyncio.to_thread(self._run_remote_command_sync, region, host, command)
