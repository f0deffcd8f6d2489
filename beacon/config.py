"""
beacon/config.py — YAML 配置层

进程级 `cfg` 对象，读取 config.yaml（可用 BEACON_CONFIG 覆盖路径），
支持点号路径访问与 ${VAR:-default} 环境变量替换。

用法：
    from beacon.config import cfg
    interval = cfg.get("beacon.batch_interval_ms", 30000)
"""

import copy
import os
import re
import threading
from typing import Any, Dict, Optional

import yaml

VERSION = "0.3.0"
API_BASE = "/api"

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


class Config:
    def __init__(self, path: Optional[str] = None):
        self.path = path or os.getenv("BEACON_CONFIG", "config.yaml")
        self.config: Dict[str, Any] = {}
        self._lock = threading.RLock()
        self.reload()

    def reload(self) -> Dict[str, Any]:
        with self._lock:
            if not os.path.exists(self.path):
                self.config = {}
                return self.config
            with open(self.path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
            if not isinstance(loaded, dict):
                raise ValueError(f"config root must be a mapping: {self.path}")
            self.config = loaded
            return self.config

    def replace_env_vars(self, value: Any) -> Any:
        """递归替换 ${VAR} / ${VAR:-default} 占位符。"""
        if isinstance(value, dict):
            return {k: self.replace_env_vars(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.replace_env_vars(v) for v in value]
        if not isinstance(value, str):
            return value

        def _sub(match):
            name, default = match.group(1), match.group(2)
            return os.getenv(name, default if default is not None else "")

        resolved = _ENV_PATTERN.sub(_sub, value)
        # 整个值就是一个占位符时，保留 YAML 标量类型（int / float / bool）
        if resolved != value and _ENV_PATTERN.fullmatch(value):
            try:
                parsed = yaml.safe_load(resolved)
            except yaml.YAMLError:
                return resolved
            if isinstance(parsed, (int, float, bool)):
                return parsed
        return resolved

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            cursor: Any = self.config
            for part in [x for x in str(key or "").split(".") if x]:
                if not isinstance(cursor, dict) or part not in cursor:
                    return default
                cursor = cursor[part]
            if cursor is None:
                return default
            return self.replace_env_vars(copy.deepcopy(cursor))

    def set(self, key: str, value: Any) -> None:
        keys = [x for x in str(key or "").split(".") if x]
        if not keys:
            return
        with self._lock:
            if not isinstance(self.config, dict):
                self.config = {}
            cursor = self.config
            for part in keys[:-1]:
                if not isinstance(cursor.get(part), dict):
                    cursor[part] = {}
                cursor = cursor[part]
            cursor[keys[-1]] = value

    def save_config(self) -> None:
        with self._lock:
            temp_path = f"{self.path}.tmp"
            try:
                with open(temp_path, "w", encoding="utf-8") as f:
                    yaml.safe_dump(self.config, f, allow_unicode=True, sort_keys=False)
                os.replace(temp_path, self.path)
            except Exception:
                if os.path.exists(temp_path):
                    os.remove(temp_path)
                raise


cfg = Config()
