import json
import os
import time
from pathlib import Path
from typing import Any, List
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.storage import KeyValueStore
from chat_core.infrastructure.logging.logger import logger


SCHEMA_VERSION = 1


class JsonKeyValueStore(KeyValueStore):
    """以 JSON 文件持久化的键值存储，每个键对应一个文件。

    写入的值会包在 {data, timestamp, schemaVersion} 信封中；读取到的
    schemaVersion 与当前版本不一致时只记录日志，不做迁移也不报错。
    """

    def __init__(self, root: str | Path | None = None, prefix: str | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._prefix = settings.storage_prefix if prefix is None else prefix
        self._root.mkdir(parents=True, exist_ok=True)

    def get(self, key: str, default: Any = None) -> Any:
        path = self._path(key)
        if not path.exists():
            return default
        try:
            envelope = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Storage read error for key '{key}'", extra={"extra": {"key": key, "error": str(e)}})
            return default
        if not isinstance(envelope, dict) or "data" not in envelope:
            return default
        version = envelope.get("schemaVersion")
        if version is not None and version != SCHEMA_VERSION:
            logger.info(
                f"Schema version mismatch for key '{key}'",
                extra={"extra": {"key": key, "stored": version, "current": SCHEMA_VERSION}},
            )
        data = envelope.get("data")
        return default if data is None else data

    def set(self, key: str, value: Any) -> bool:
        path = self._path(key)
        tmp_path = self._root / f"{path.stem}.{uuid4().hex}.json.tmp"
        envelope = {
            "data": value,
            "timestamp": int(time.time() * 1000),
            "schemaVersion": SCHEMA_VERSION,
        }
        try:
            tmp_path.write_text(json.dumps(envelope, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Storage write error for key '{key}'", extra={"extra": {"key": key, "error": str(e)}})
            tmp_path.unlink(missing_ok=True)
            return False
        return True

    def remove(self, key: str) -> bool:
        path = self._path(key)
        if not path.exists():
            return False
        path.unlink()
        return True

    def keys(self) -> List[str]:
        return sorted(p.stem[len(self._prefix):] for p in self._root.glob(f"{self._prefix}*.json"))

    def clear(self) -> None:
        for key in self.keys():
            self.remove(key)

    def _path(self, key: str) -> Path:
        return self._root / f"{self._prefix}{key}.json"
