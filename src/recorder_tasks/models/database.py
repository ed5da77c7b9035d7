"""数据库连接管理

提供 SQLAlchemy 引擎与会话管理，并把底层存储故障统一转换为 StoreUnavailable，
便于调度循环整体退避重试。
"""

from __future__ import annotations

import contextlib
import logging
import threading
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from ..errors import StoreUnavailable
from .task import Base

logger = logging.getLogger("recorder.database")


class DatabaseManager:
    """数据库管理器（单例模式）

    提供数据库连接和会话管理功能，支持自动创建表结构。
    采用线程安全的单例模式，确保全局只有一个数据库管理器实例。
    """

    _instance = None
    _lock = threading.Lock()

    def __new__(
        cls, db_path: str = "recorder.db", enable_wal: bool = True, busy_timeout: float = 30.0
    ):
        """单例模式实现

        Args:
            db_path: SQLite 数据库文件路径
            enable_wal: 是否启用 WAL 日志模式
            busy_timeout: 等待写锁的秒数，超时后视为存储不可用

        Returns:
            DatabaseManager: 单例实例
        """
        if cls._instance is None:
            with cls._lock:
                # 双重检查锁定
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(
        self, db_path: str = "recorder.db", enable_wal: bool = True, busy_timeout: float = 30.0
    ):
        """初始化数据库管理器

        Args:
            db_path: SQLite 数据库文件路径
            enable_wal: 是否启用 WAL 日志模式
            busy_timeout: 等待写锁的秒数
        """
        # 确保只初始化一次
        if self._initialized:
            return

        self.db_path = db_path
        self.engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False, "timeout": busy_timeout},
            echo=False,  # 设为 True 可查看 SQL 语句
        )
        self._install_pragmas(enable_wal)

        # 线程安全地创建表结构
        with self.__class__._lock:
            Base.metadata.create_all(self.engine, checkfirst=True)
        # 会话提交后仍允许读取已加载的字段，记录快照在会话外构造
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

        self._initialized = True
        logger.info("数据库初始化完成 db=%s wal=%s", db_path, enable_wal)

    def _install_pragmas(self, enable_wal: bool) -> None:
        @event.listens_for(self.engine, "connect")
        def _on_connect(dbapi_connection, _record):  # noqa: ANN001
            cursor = dbapi_connection.cursor()
            try:
                cursor.execute("PRAGMA foreign_keys=ON")
                if enable_wal:
                    cursor.execute("PRAGMA journal_mode=WAL")
            finally:
                cursor.close()

    @contextlib.contextmanager
    def session_scope(self) -> Iterator[Session]:
        """事务作用域：成功提交，异常回滚

        连接类故障（数据库不可用、连接断开）统一转换为 StoreUnavailable，
        其余 SQLAlchemy 异常原样抛出。
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except (OperationalError, InterfaceError, DisconnectionError) as exc:
            session.rollback()
            raise StoreUnavailable(str(exc)) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @classmethod
    def reset_instance(cls):
        """重置单例实例（主要用于测试）

        注意：这个方法应该谨慎使用，主要用于单元测试中重置状态。
        """
        with cls._lock:
            if cls._instance is not None and getattr(cls._instance, "_initialized", False):
                cls._instance.engine.dispose()
            cls._instance = None

    @classmethod
    def get_instance(
        cls, db_path: str = "recorder.db", enable_wal: bool = True, busy_timeout: float = 30.0
    ) -> "DatabaseManager":
        """获取单例实例的便捷方法

        Args:
            db_path: SQLite 数据库文件路径
            enable_wal: 是否启用 WAL 日志模式
            busy_timeout: 等待写锁的秒数

        Returns:
            DatabaseManager: 单例实例
        """
        return cls(db_path, enable_wal, busy_timeout)
