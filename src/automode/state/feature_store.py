from __future__ import annotations

import json
import os
import shutil
import tempfile
import time
from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path

from loguru import logger

from automode.errors import FeatureNotFoundError, FeatureStoreError
from automode.models import Feature, utcnow_iso

STATE_DIRNAME = ".automode"
FEATURE_FILENAME = "feature.json"
AGENT_OUTPUT_FILENAME = "agent-output.md"


class FeatureStore:
    """Durable feature records under ``<project>/.automode/features/<id>/``."""

    def __init__(self, lock_timeout_seconds: float = 3.0) -> None:
        self.lock_timeout_seconds = lock_timeout_seconds

    @staticmethod
    def features_dir(project_path: Path) -> Path:
        return Path(project_path) / STATE_DIRNAME / "features"

    def feature_dir(self, project_path: Path, feature_id: str) -> Path:
        if not feature_id or "/" in feature_id or feature_id in {".", ".."}:
            raise FeatureStoreError(f"Invalid feature id: {feature_id!r}", feature_id=feature_id)
        return self.features_dir(project_path) / feature_id

    @contextmanager
    def _lock(self, project_path: Path):
        lock_file = Path(project_path) / STATE_DIRNAME / ".lock"
        lock_file.parent.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise FeatureStoreError("Timed out waiting for feature store lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                lock_file.unlink()
            except FileNotFoundError:
                pass

    @staticmethod
    def _write_atomic(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}-", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.replace(temp_name, path)
        except BaseException:
            try:
                os.unlink(temp_name)
            except OSError:
                pass
            raise

    def _read(self, path: Path) -> Feature | None:
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Skipping unreadable feature record {}: {}", path, exc)
            return None
        if not isinstance(payload, dict) or not payload.get("id"):
            logger.warning("Skipping malformed feature record {}", path)
            return None
        return Feature.from_dict(payload)

    def _write(self, project_path: Path, feature: Feature) -> None:
        path = self.feature_dir(project_path, feature.id) / FEATURE_FILENAME
        serialized = json.dumps(feature.to_dict(), ensure_ascii=False, indent=2)
        self._write_atomic(path, serialized + "\n")

    def get(self, project_path: Path, feature_id: str) -> Feature | None:
        return self._read(self.feature_dir(project_path, feature_id) / FEATURE_FILENAME)

    def require(self, project_path: Path, feature_id: str) -> Feature:
        feature = self.get(project_path, feature_id)
        if feature is None:
            raise FeatureNotFoundError(f"Feature {feature_id} not found", feature_id=feature_id)
        return feature

    def list(self, project_path: Path) -> list[Feature]:
        root = self.features_dir(project_path)
        if not root.is_dir():
            return []
        features: list[Feature] = []
        for entry in root.iterdir():
            if not entry.is_dir():
                continue
            feature = self._read(entry / FEATURE_FILENAME)
            if feature is not None:
                features.append(feature)
        features.sort(key=lambda item: (item.created_at, item.id))
        return features

    def save(self, project_path: Path, feature: Feature) -> None:
        feature.updated_at = utcnow_iso()
        with self._lock(project_path):
            self._write(project_path, feature)

    def create(self, project_path: Path, feature: Feature) -> Feature:
        with self._lock(project_path):
            if self.get(project_path, feature.id) is not None:
                raise FeatureStoreError(
                    f"Feature {feature.id} already exists", feature_id=feature.id
                )
            feature.updated_at = feature.created_at
            self._write(project_path, feature)
        return feature

    def update(
        self,
        project_path: Path,
        feature_id: str,
        updater: Callable[[Feature], None],
    ) -> Feature:
        with self._lock(project_path):
            feature = self.get(project_path, feature_id)
            if feature is None:
                raise FeatureNotFoundError(f"Feature {feature_id} not found", feature_id=feature_id)
            updater(feature)
            feature.updated_at = utcnow_iso()
            self._write(project_path, feature)
        return feature

    def delete(self, project_path: Path, feature_id: str) -> bool:
        target = self.feature_dir(project_path, feature_id)
        with self._lock(project_path):
            if not target.exists():
                return False
            shutil.rmtree(target)
        return True

    def get_agent_output(self, project_path: Path, feature_id: str) -> str | None:
        path = self.feature_dir(project_path, feature_id) / AGENT_OUTPUT_FILENAME
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def save_agent_output(self, project_path: Path, feature_id: str, text: str) -> None:
        path = self.feature_dir(project_path, feature_id) / AGENT_OUTPUT_FILENAME
        self._write_atomic(path, text)

    def append_agent_output(self, project_path: Path, feature_id: str, text: str) -> None:
        previous = self.get_agent_output(project_path, feature_id) or ""
        separator = "\n\n---\n\n" if previous.strip() else ""
        self.save_agent_output(project_path, feature_id, f"{previous}{separator}{text}")
