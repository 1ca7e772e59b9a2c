"""Rendezvous channel: the one-slot mailbox between leader and workers.

The leader is the only writer and publishes once per control-plane init.
Workers only read. There is no locking and no expiry; the latest publish
replaces whatever was there. Callers depend on ``RendezvousChannel`` so a
stronger backing store can replace the shared-file implementation.
"""
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .errors import RendezvousUnavailable
from .models import JoinCredential, Publication

logger = logging.getLogger("kubeboot.rendezvous")

JOIN_COMMAND_FILE = "join-command.sh"
CLUSTER_INFO_FILE = "cluster-info.txt"
EPOCH_FILE = "epoch"


class RendezvousChannel(ABC):
    """Single-writer, multi-reader mailbox for the join credential."""

    @abstractmethod
    def available(self) -> bool:
        """Whether the backing store can be reached right now."""

    @abstractmethod
    def publish(self, credential: JoinCredential, snapshot: str) -> Publication:
        """Replace the mailbox contents with a fresh credential.

        Raises:
            RendezvousUnavailable: If the backing store cannot be reached
        """

    @abstractmethod
    def try_read(self) -> Optional[Publication]:
        """Return the current publication, or None if the mailbox is empty.

        The returned command is raw text and has not been validated.
        """


class FileRendezvousChannel(RendezvousChannel):
    """Mailbox kept as plain-text files in a directory on a shared mount."""

    def __init__(self, mount_path: str, directory: str = "k8s-join-token"):
        self.mount_path = Path(mount_path)
        self.directory = self.mount_path / directory

    @property
    def command_file(self) -> Path:
        return self.directory / JOIN_COMMAND_FILE

    @property
    def cluster_info_file(self) -> Path:
        return self.directory / CLUSTER_INFO_FILE

    @property
    def epoch_file(self) -> Path:
        return self.directory / EPOCH_FILE

    def available(self) -> bool:
        return self.mount_path.is_dir()

    def publish(self, credential: JoinCredential, snapshot: str) -> Publication:
        if not self.available():
            raise RendezvousUnavailable(
                f"Shared storage not mounted at {self.mount_path}",
                step="publish-credential",
            )

        epoch = self._read_epoch() + 1
        published_at = datetime.now(timezone.utc).isoformat()
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            # command first, epoch last: a reader that sees the new epoch also sees the new command
            self._write(self.command_file, credential.to_command() + "\n", 0o644)
            self._write(self.cluster_info_file, snapshot.rstrip() + "\n", 0o644)
            self._write(self.epoch_file, f"{epoch} {published_at}\n", 0o644)
        except OSError as e:
            raise RendezvousUnavailable(
                f"Cannot write to {self.directory}: {e}",
                step="publish-credential",
            ) from e

        logger.info(f"Join command saved to: {self.command_file} (epoch {epoch})")
        logger.info(f"Cluster info saved to: {self.cluster_info_file}")
        return Publication(command=credential.to_command(), epoch=epoch, published_at=published_at)

    def try_read(self) -> Optional[Publication]:
        try:
            text = self.command_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.debug(f"Cannot read {self.command_file}: {e}")
            return None

        if not text.strip():
            logger.warning("⚠️  Join command file is empty, waiting...")
            return None

        epoch, published_at = self._read_epoch_line()
        return Publication(command=text.strip(), epoch=epoch, published_at=published_at)

    def read_cluster_info(self) -> Optional[str]:
        try:
            return self.cluster_info_file.read_text(encoding="utf-8")
        except OSError:
            return None

    def _read_epoch(self) -> int:
        return self._read_epoch_line()[0]

    def _read_epoch_line(self):
        try:
            parts = self.epoch_file.read_text(encoding="utf-8").split()
        except OSError:
            return 0, None
        try:
            epoch = int(parts[0])
        except (IndexError, ValueError):
            return 0, None
        return epoch, parts[1] if len(parts) > 1 else None

    @staticmethod
    def _write(path: Path, content: str, mode: int) -> None:
        tmp = path.with_name(f".{path.name}.tmp")
        tmp.write_text(content, encoding="utf-8")
        os.chmod(tmp, mode)
        os.replace(tmp, path)
