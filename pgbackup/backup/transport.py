"""
Remote replication of finished archives over SSH/SFTP.

Remote copies are best effort: the local tiers stay the source of truth and
a failed transfer never affects the local archive.
"""

import os
import logging
from pathlib import Path
from typing import List

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from pgbackup.models import BackupJob


logger = logging.getLogger(__name__)


class TransferError(Exception):
    """Raised when copying an archive to the remote host fails."""
    pass


class SSHTransporter:
    """
    Copies archives to {remote_user}@{remote_host}:{remote_dir}/ via SFTP.

    Authenticates with the configured password, or the private key file when
    no password is set.
    """

    tool = 'ssh'

    def __init__(self, job: BackupJob, timeout: int = 30):
        """
        Initialize SSH transporter.

        Args:
            job: BackupJob with remote_* settings
            timeout: Connection timeout in seconds
        """
        self.host = job.remote_host
        self.port = job.remote_port
        self.username = job.remote_user
        self.password = job.remote_password
        self.private_key_path = job.remote_key_file
        self.remote_dir = job.remote_dir
        self.timeout = timeout

        self.ssh_client = None
        self.sftp_client = None

    def missing_tools(self) -> List[str]:
        # The SSH client is paramiko, a hard dependency of this package
        return []

    def _connect(self):
        """
        Establish SSH connection.

        Raises:
            TransferError: If connection fails
        """
        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())

            connect_kwargs = {
                'hostname': self.host,
                'port': self.port,
                'username': self.username,
                'timeout': self.timeout
            }

            # Use password or private key
            if self.password:
                connect_kwargs['password'] = self.password
            elif self.private_key_path:
                key_path = Path(self.private_key_path).expanduser()
                if not key_path.exists():
                    raise TransferError(f"Private key not found: {self.private_key_path}")
                connect_kwargs['key_filename'] = str(key_path)
            else:
                raise TransferError("Either remote password or private key must be provided")

            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()

        except TransferError:
            raise
        except paramiko.AuthenticationException as e:
            raise TransferError(f"SSH authentication failed: {e}")
        except paramiko.SSHException as e:
            raise TransferError(f"SSH connection failed: {e}")
        except Exception as e:
            raise TransferError(f"Failed to connect to {self.host}: {e}")

    def transfer(self, archive_path: str) -> str:
        """
        Copy an archive to the remote directory.

        The file is uploaded under a .part name and renamed once complete.

        Args:
            archive_path: Local archive path

        Returns:
            Remote path of the uploaded archive

        Raises:
            TransferError: If connection or upload fails
        """
        if not os.path.exists(archive_path):
            raise TransferError(f"Local file not found: {archive_path}")

        filename = os.path.basename(archive_path)
        remote_path = f"{self.remote_dir.rstrip('/')}/{filename}"
        partial_path = f"{remote_path}.part"

        try:
            self._connect()
            self.sftp_client.put(archive_path, partial_path)
            self.sftp_client.posix_rename(partial_path, remote_path)
            logger.debug(f"Uploaded {filename} to {self.host}:{remote_path}")
            return remote_path
        except TransferError:
            raise
        except PermissionError as e:
            raise TransferError(f"Permission denied writing {remote_path}: {e}")
        except Exception as e:
            raise TransferError(f"Failed to upload {filename}: {e}")
        finally:
            self.cleanup()

    def cleanup(self):
        """Close SSH/SFTP connections."""
        if self.sftp_client:
            try:
                self.sftp_client.close()
            except Exception:
                pass
            self.sftp_client = None

        if self.ssh_client:
            try:
                self.ssh_client.close()
            except Exception:
                pass
            self.ssh_client = None
