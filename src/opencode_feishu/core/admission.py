"""Group admission: decide whether a group message warrants an active reply.

Messages that are not admitted are still forwarded to the backend as silent
context; they just produce no reply. Direct chats are always admitted.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Iterable, Optional, Sequence

from opencode_feishu.config import BotConfig
from opencode_feishu.core.types import ChatType
from opencode_feishu.messenger.models import Mention

DEFAULT_BOT_NAMES = ("opencode", "bot", "助手", "智能体")

_QUESTION_END = re.compile(r"[？?]\s*$")
_INTERROGATIVE = re.compile(r"\b(why|how|what|when|where|who|help)\b", re.IGNORECASE)
_ACTION_KEYWORDS = (
    "帮", "麻烦", "请", "能否", "可以", "解释", "看看",
    "排查", "分析", "总结", "写", "改", "修", "查", "对比", "翻译",
)
_ACTION_WORDS = re.compile(
    r"\b(please|explain|summari[sz]e|translate|fix|review|analy[sz]e|check)\b",
    re.IGNORECASE,
)


class AdmissionPolicy(ABC):
    """Decides whether a message gets an active reply."""

    def should_admit(self, chat_type: ChatType, text: str, mentions: Sequence[Mention]) -> bool:
        if chat_type == ChatType.DIRECT:
            return True
        return self._admit_group(text, mentions)

    @abstractmethod
    def _admit_group(self, text: str, mentions: Sequence[Mention]) -> bool:
        ...


class MentionOnlyPolicy(AdmissionPolicy):
    """Reply in groups only when the bot is explicitly tagged.

    When the bot's own id is not known yet, any tag counts.
    """

    def __init__(self, self_id: Optional[str] = None):
        self.self_id = self_id

    def _admit_group(self, text: str, mentions: Sequence[Mention]) -> bool:
        if not mentions:
            return False
        if not self.self_id:
            return True
        return any(m.open_id == self.self_id for m in mentions)


class HeuristicIntentPolicy(AdmissionPolicy):
    """Reply in groups on tags, questions, help/action requests or direct address."""

    def __init__(self, bot_names: Iterable[str] = DEFAULT_BOT_NAMES):
        names = [n for n in bot_names if n] or list(DEFAULT_BOT_NAMES)
        self._name_pattern = re.compile(
            r"^(" + "|".join(re.escape(n) for n in names) + r")[\s,:，：]",
            re.IGNORECASE,
        )

    def _admit_group(self, text: str, mentions: Sequence[Mention]) -> bool:
        if mentions:
            return True
        if _QUESTION_END.search(text):
            return True
        if _INTERROGATIVE.search(text):
            return True
        if any(k in text for k in _ACTION_KEYWORDS) or _ACTION_WORDS.search(text):
            return True
        return bool(self._name_pattern.match(text))


def build_admission_policy(config: BotConfig) -> AdmissionPolicy:
    """Select the group admission policy configured for this deployment."""
    match config.group_policy:
        case "mention":
            return MentionOnlyPolicy()
        case "heuristic":
            return HeuristicIntentPolicy(config.bot_names)
        case _:
            raise ValueError(f"Unknown group policy: {config.group_policy}")
