"""
app.core.settings
~~~~~~~~~~~~~~~~~

集中式配置管理，基于 pydantic-settings 自动从 ``.env`` 文件加载。

支持多环境配置（dev / test / prod），加载顺序为:
  1. 环境变量（最高优先级）
  2. ``.env.{ENVIRONMENT}`` 环境专属文件
  3. ``.env`` 基础文件
  4. 字段默认值（最低优先级）
"""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# 项目根目录（app/ 的上一级）
PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent.parent

# 读取当前环境标识（在 Settings 类定义之前，用于决定加载哪个 .env 文件）
_CURRENT_ENV: str = os.getenv("ENVIRONMENT", "dev")


class Settings(BaseSettings):
    """全局配置对象，字段值按如下优先级加载：环境变量 > .env.{env} > .env > 默认值。"""

    # ── 基础 ──────────────────────────────────────────────────────────
    PROJECT_NAME: str = Field(default="Party Lobby Backend", description="项目名称")
    VERSION: str = Field(default="0.1.0", description="版本号")
    ENVIRONMENT: Literal["dev", "test", "prod"] = Field(
        default="dev",
        description="运行环境：dev / test / prod",
    )

    # ── 服务 ──────────────────────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0", description="服务监听地址")
    PORT: int = Field(default=3001, description="服务监听端口")
    LOG_LEVEL: str = Field(default="INFO", description="日志级别（可被环境属性覆盖）")

    # ── MongoDB ───────────────────────────────────────────────────────
    MONGO_URI: str = Field(
        default="mongodb://localhost:27017",
        description="MongoDB 连接串",
    )
    MONGO_DB_NAME: str = Field(default="party_lobby", description="数据库名称")

    # ── 题库 ──────────────────────────────────────────────────────────
    QUESTION_BANK_FILE: str = Field(
        default="data/questions.yaml",
        description="题库种子文件的相对路径（相对项目根目录），题目集合为空时导入",
    )
    QUESTIONS_PER_LOBBY: int = Field(default=10, description="每个房间抽取的题目数")

    # ── 计时器 ────────────────────────────────────────────────────────
    QUESTION_DURATION_SECONDS: int = Field(default=60, description="每道题的作答时长（秒）")
    TIMER_TICK_SECONDS: float = Field(default=1.0, description="计时器心跳间隔（秒）")

    # ── 随机房间 ──────────────────────────────────────────────────────
    RANDOM_LOBBY_NAME: str = Field(default="Random Lobby", description="随机匹配自动建房的名称")
    RANDOM_LOBBY_CAPACITY: int = Field(default=10, description="随机匹配自动建房的容量")

    # ── 清理任务 ──────────────────────────────────────────────────────
    CLEANUP_INTERVAL_SECONDS: float = Field(default=120.0, description="清理任务执行间隔（秒）")
    LOBBY_STALE_SECONDS: int = Field(default=300, description="房间无更新超过该时长即回收（秒）")
    LOBBY_IDLE_SECONDS: int = Field(
        default=120,
        description="空房间或单人房间的宽限时长（秒）",
    )

    # ── 限流 ──────────────────────────────────────────────────────────
    WS_RATE_LIMIT_INTERVAL: float = Field(
        default=0.05,
        description="同一连接两条消息之间的最小间隔（秒），0 表示不限流",
    )

    # ── Pydantic Settings ─────────────────────────────────────────────
    # 先加载 .env.{env} 再加载 .env，前者优先级更高
    model_config = SettingsConfigDict(
        env_file=(f".env.{_CURRENT_ENV}", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── 环境判断 ──────────────────────────────────────────────────────

    @property
    def is_prod(self) -> bool:
        """当前是否为生产环境。"""
        return self.ENVIRONMENT == "prod"

    @property
    def is_dev(self) -> bool:
        """当前是否为开发环境。"""
        return self.ENVIRONMENT == "dev"

    # ── 环境差异化行为 ────────────────────────────────────────────────

    @property
    def debug(self) -> bool:
        """是否开启 debug 模式。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def reload(self) -> bool:
        """是否开启热重载。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def effective_log_level(self) -> str:
        """根据环境自动推断日志级别。

        - dev  → INFO
        - test → DEBUG（方便排查测试失败）
        - prod → WARNING（减少噪音）

        如果环境变量中显式设置了 LOG_LEVEL，会覆盖此默认推断。
        """
        env_log = os.getenv("LOG_LEVEL")
        if env_log:
            return env_log
        return {
            "dev": "INFO",
            "test": "DEBUG",
            "prod": "WARNING",
        }.get(self.ENVIRONMENT, "INFO")

    @property
    def allow_cors_all_origins(self) -> bool:
        """是否允许所有 CORS 来源。非 prod 环境允许，方便本地调试。"""
        return not self.is_prod

    @property
    def question_bank_path(self) -> Path:
        """题库种子文件的绝对路径。"""
        return PROJECT_ROOT / self.QUESTION_BANK_FILE


@lru_cache
def get_settings() -> Settings:
    """获取全局 Settings 单例（带缓存，避免重复解析 .env）。"""
    return Settings()


settings: Settings = get_settings()
