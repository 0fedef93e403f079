"""
Local transient artifacts: the pending-order snapshot that bridges a checkout
across the redirect to the payment page.
"""
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from cartsync.models import PendingOrder

logger = logging.getLogger(__name__)

PENDING_ORDER_KEY = "pendingOrder"


def _safe_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", name).lstrip(".") or "_"


class ArtifactStore(ABC):
    """Small local key-value storage, namespaced per user"""

    @abstractmethod
    def get(self, namespace: str, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, namespace: str, key: str, value: str) -> None:
        ...

    @abstractmethod
    def delete(self, namespace: str, key: str) -> None:
        ...


class MemoryArtifactStore(ArtifactStore):
    def __init__(self):
        self._values: Dict[str, Dict[str, str]] = {}

    def get(self, namespace: str, key: str) -> Optional[str]:
        return self._values.get(namespace, {}).get(key)

    def set(self, namespace: str, key: str, value: str) -> None:
        self._values.setdefault(namespace, {})[key] = value

    def delete(self, namespace: str, key: str) -> None:
        self._values.get(namespace, {}).pop(key, None)


class FileArtifactStore(ArtifactStore):
    """
    One file per artifact under ``directory/{namespace}/{key}``.

    Writes go to a temporary file that replaces the target, so processes
    sharing the directory never see a half-written artifact and never drop
    each other's keys.
    """

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _file(self, namespace: str, key: str) -> Path:
        return self.directory / _safe_name(namespace) / _safe_name(key)

    def get(self, namespace: str, key: str) -> Optional[str]:
        path = self._file(namespace, key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error(f"Unreadable artifact {path.name}: {e}")
            return None

    def set(self, namespace: str, key: str, value: str) -> None:
        path = self._file(namespace, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp, path)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise

    def delete(self, namespace: str, key: str) -> None:
        self._file(namespace, key).unlink(missing_ok=True)


class PendingOrderStore:
    """Reads and writes the pending order under its fixed key"""

    def __init__(self, artifacts: ArtifactStore):
        self.artifacts = artifacts

    def load(self, uid: str) -> Optional[PendingOrder]:
        raw = self.artifacts.get(uid, PENDING_ORDER_KEY)
        if raw is None:
            return None
        try:
            return PendingOrder.model_validate_json(raw)
        except PydanticValidationError:
            logger.warning("Discarding invalid pending order artifact")
            self.artifacts.delete(uid, PENDING_ORDER_KEY)
            return None

    def save(self, uid: str, pending: PendingOrder) -> None:
        self.artifacts.set(uid, PENDING_ORDER_KEY, pending.model_dump_json(by_alias=True))

    def clear(self, uid: str) -> None:
        self.artifacts.delete(uid, PENDING_ORDER_KEY)
