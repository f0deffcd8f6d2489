"""
beacon/db.py — 接收端数据库

DB.get_session() 返回一个新的 SQLAlchemy Session，调用方负责 commit / rollback / close。
连接串取自 db 配置（默认 sqlite:///data/beacon.db）；内存 SQLite 使用 StaticPool，
保证同一进程内所有 Session 看到同一个库。
"""

import os
import threading
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from beacon.config import cfg
from beacon.events import log_event, E
from beacon.log import get_logger
from beacon.models.base import Base

logger = get_logger(__name__)

DEFAULT_DB_URL = "sqlite:///data/beacon.db"


class Database:
    def __init__(self, url: Optional[str] = None):
        self._url = url
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None
        self._lock = threading.Lock()

    @property
    def url(self) -> str:
        return self._url or str(cfg.get("db", DEFAULT_DB_URL) or DEFAULT_DB_URL)

    def configure(self, url: str) -> None:
        """切换到新的连接串，旧连接池立即释放。"""
        with self._lock:
            if self._engine is not None:
                self._engine.dispose()
            self._url = url
            self._engine = None
            self._session_factory = None

    def _build_engine(self, url: str) -> Engine:
        if url.startswith("sqlite"):
            if url in ("sqlite://", "sqlite:///:memory:"):
                return create_engine(
                    url,
                    connect_args={"check_same_thread": False},
                    poolclass=StaticPool,
                )
            path = url.split("sqlite:///", 1)[-1]
            directory = os.path.dirname(path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            return create_engine(url, connect_args={"check_same_thread": False})
        return create_engine(url, pool_pre_ping=True)

    @property
    def engine(self) -> Engine:
        with self._lock:
            if self._engine is None:
                self._engine = self._build_engine(self.url)
                self._session_factory = sessionmaker(bind=self._engine, autoflush=False, expire_on_commit=False)
            return self._engine

    def get_session(self) -> Session:
        engine = self.engine
        if self._session_factory is None:
            self._session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        return self._session_factory()

    def create_tables(self) -> None:
        Base.metadata.create_all(self.engine)
        log_event(logger, E.SYSTEM_DB_INIT, url=self.url.split("@")[-1])


DB = Database()
