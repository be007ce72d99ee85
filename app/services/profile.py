"""
app.services.profile
~~~~~~~~~~~~~~~~~~~~

玩家资料目录 —— 会话首次连接时懒生成随机用户名、头像和颜色。

资料以会话 ID 为键，跨房间保持不变，连接断开时由网关调用 ``remove()`` 回收。
"""
from __future__ import annotations

import random

from app.core.logging import get_logger
from app.schemas.game import Profile

logger = get_logger(__name__)

_ADJECTIVES: tuple[str, ...] = (
    "Happy", "Clever", "Brave", "Gentle", "Wise",
    "Swift", "Calm", "Bright", "Wild", "Kind",
)
_NOUNS: tuple[str, ...] = (
    "Fox", "Bear", "Eagle", "Wolf", "Owl",
    "Lion", "Tiger", "Hawk", "Dove", "Hare",
)
_COLORS: tuple[str, ...] = (
    "#FF6B6B", "#4ECDC4", "#45B7D1", "#96CEB4", "#FFEEAD",
    "#D4A5A5", "#9B59B6", "#3498DB", "#E74C3C", "#2ECC71",
)
_AVATAR_STYLES: tuple[str, ...] = ("adventurer", "avataaars", "bottts", "fun-emoji", "micah")
_AVATAR_URL = "https://api.dicebear.com/7.x/{style}/svg?seed={seed}"


class ProfileDirectory:
    """进程级玩家资料表。

    Args:
        rng: 可选的随机数生成器（测试时注入固定种子）。
    """

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()
        self._profiles: dict[str, Profile] = {}

    def get_or_create(self, user_id: str) -> Profile:
        """返回已有资料，不存在时生成一份新的。"""
        profile = self._profiles.get(user_id)
        if profile is None:
            profile = Profile(
                id=user_id,
                username=self._random_username(),
                avatar=self._random_avatar(),
                color=self._rng.choice(_COLORS),
            )
            self._profiles[user_id] = profile
            logger.debug("生成玩家资料 | user=%s | name=%s", user_id, profile.username)
        return profile

    def get(self, user_id: str) -> Profile | None:
        return self._profiles.get(user_id)

    def remove(self, user_id: str) -> None:
        self._profiles.pop(user_id, None)

    def __len__(self) -> int:
        return len(self._profiles)

    def _random_username(self) -> str:
        adjective = self._rng.choice(_ADJECTIVES)
        noun = self._rng.choice(_NOUNS)
        return f"{adjective}{noun}{self._rng.randrange(1000)}"

    def _random_avatar(self) -> str:
        seed = "".join(self._rng.choices("abcdefghijklmnopqrstuvwxyz0123456789", k=6))
        return _AVATAR_URL.format(style=self._rng.choice(_AVATAR_STYLES), seed=seed)
