from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Mapping


# Chinese statements end at CJK punctuation or whitespace; English values may
# contain spaces and end at ASCII punctuation.
_ZH_END = r"(?=[，,。！？!?；;\s]|$)"
_EN_END = r"(?=[,.!?;，。！？；]|\s+(?:and|but|because|so)\b|$)"


@dataclass(frozen=True, slots=True)
class ProfileRule:
    """One self-referential statement pattern mapped onto a profile field and a fact category."""

    pattern: re.Pattern[str]
    section: str  # "user_profile" or "topic_memories"
    field: str
    category: str
    multi: bool = False
    group: str = "value"


def _rule(pattern: str, section: str, field_name: str, category: str, *, multi: bool = False) -> ProfileRule:
    return ProfileRule(
        pattern=re.compile(pattern, flags=re.IGNORECASE | re.UNICODE),
        section=section,
        field=field_name,
        category=category,
        multi=multi,
    )


DEFAULT_PROFILE_RULES: tuple[ProfileRule, ...] = (
    # identity
    _rule(r"我(?:叫|的名字是|的名字叫|名字是)(?P<value>.+?)" + _ZH_END, "user_profile", "name", "fact"),
    _rule(r"\b(?:my name is|call me)\s+(?P<value>[^\W\d_][\w'\-]{0,30})", "user_profile", "name", "fact"),
    # age
    _rule(r"我(?:今年|已经)?(?P<value>\d{1,3})(?:岁|周岁)", "user_profile", "age", "fact"),
    _rule(r"\bi(?:'m| am)\s+(?P<value>\d{1,3})\s+years?\s+old\b", "user_profile", "age", "fact"),
    # occupation
    _rule(r"我(?:是|在|做)(?P<value>[^，,。！？!?；;\s]+?)(?:工作|上班|职业)", "user_profile", "occupation", "fact"),
    _rule(r"\bi work (?:as|at|in)\s+(?:an?\s+)?(?P<value>.+?)" + _EN_END, "user_profile", "occupation", "fact"),
    # location
    _rule(r"我(?:住在|在|来自)(?P<value>[^，,。！？!?；;\s]+?(?:市|省|国|地区))", "user_profile", "location", "fact"),
    _rule(r"\bi (?:live in|am from|'m from|come from)\s+(?P<value>.+?)" + _EN_END, "user_profile", "location", "fact"),
    # likes
    _rule(r"我(?:喜欢|爱|热爱)(?P<value>.+?)" + _ZH_END, "topic_memories", "preferences", "preference", multi=True),
    _rule(r"\bi (?:really )?(?:like|love|enjoy)\s+(?P<value>.+?)" + _EN_END, "topic_memories", "preferences", "preference", multi=True),
    # dislikes
    _rule(r"我(?:讨厌|不喜欢|恨)(?P<value>.+?)" + _ZH_END, "topic_memories", "dislikes", "preference", multi=True),
    _rule(r"\bi (?:hate|dislike|don't like|do not like)\s+(?P<value>.+?)" + _EN_END, "topic_memories", "dislikes", "preference", multi=True),
    # goals
    _rule(r"我(?:希望|想要|梦想|目标是)(?P<value>.+?)" + _ZH_END, "user_profile", "goals", "goal", multi=True),
    _rule(r"\b(?:i hope to|i want to|i dream of|my goal is to|i wish to)\s+(?P<value>.+?)" + _EN_END, "user_profile", "goals", "goal", multi=True),
    # fears
    _rule(r"我(?:害怕|担心|怕)(?P<value>.+?)" + _ZH_END, "user_profile", "fears", "trigger", multi=True),
    _rule(r"\bi(?:'m| am) (?:afraid of|scared of|worried about)\s+(?P<value>.+?)" + _EN_END, "user_profile", "fears", "trigger", multi=True),
)


DEFAULT_TOPIC_KEYWORDS: Mapping[str, tuple[str, ...]] = {
    "work": ("工作", "上班", "老板", "同事", "公司", "职业", "事业", "项目", "会议", "job", "boss", "office", "colleague", "meeting"),
    "family": ("父母", "妈妈", "爸爸", "家人", "兄弟", "姐妹", "家", "家庭", "mom", "dad", "parents", "family", "brother", "sister"),
    "hobbies": (
        "游戏", "电影", "音乐", "书", "运动", "旅行", "摄影", "画画", "吉他", "钢琴", "唱歌", "跳舞",
        "game", "movie", "music", "book", "sport", "travel", "photography", "painting", "guitar", "piano",
    ),
    "relationships": ("朋友", "恋人", "男朋友", "女朋友", "暗恋", "喜欢", "爱情", "friend", "boyfriend", "girlfriend", "crush"),
    "problems": ("问题", "困难", "烦恼", "压力", "焦虑", "抑郁", "难过", "痛苦", "problem", "stress", "anxious", "anxiety", "depressed", "trouble"),
    "dreams": ("梦想", "希望", "愿望", "目标", "理想", "未来", "计划", "dream", "wish", "goal", "future", "plan"),
}

SENTENCE_SPLIT_RE = re.compile(r"[。！？.!?]")


@dataclass(frozen=True, slots=True)
class ImportanceRules:
    high: tuple[str, ...] = ("非常", "特别", "极其", "超级", "真的", "完全", "绝对", "extremely", "absolutely", "really", "totally")
    medium: tuple[str, ...] = ("很", "比较", "还是", "有点", "稍微", "very", "quite", "pretty", "a bit")
    low: tuple[str, ...] = ("一般", "普通", "还行", "马马虎虎", "so-so", "just okay", "whatever")
    milestones: tuple[str, ...] = (
        "第一次", "最后一次", "永远不会忘记", "印象深刻", "改变了我", "重要的", "特殊的", "难忘的", "珍贵的", "意义重大",
        "first time", "last time", "never forget", "changed my life", "unforgettable", "means a lot", "so important",
    )
    base: float = 1.0
    high_weight: float = 2.0
    medium_weight: float = 1.0
    low_weight: float = -0.5
    milestone_weight: float = 3.0
    floor: float = 1.0
    ceiling: float = 10.0


@dataclass(frozen=True, slots=True)
class SpecialEventRule:
    kind: str
    milestone: str
    pattern: re.Pattern[str]


def _event(kind: str, milestone: str, pattern: str) -> SpecialEventRule:
    return SpecialEventRule(kind, milestone, re.compile(pattern, flags=re.IGNORECASE | re.UNICODE))


DEFAULT_SPECIAL_EVENTS: tuple[SpecialEventRule, ...] = (
    _event(
        "secret_sharing",
        "first_secret",
        r"(秘密|私密|不能告诉|只有你)|\b(secret|only you know|don't tell anyone)\b",
    ),
    _event(
        "compliment",
        "first_compliment",
        r"(你真|你很|你好)(.+?)(好|棒|厉害|可爱|温柔)"
        r"|\byou(?:'re| are) (?:so |really |very )?(sweet|kind|cute|amazing|smart|wonderful|great|gentle)\b",
    ),
    _event(
        "future_planning",
        "future_planning",
        r"(我们|咱们)(.+?)(一起|共同|以后)|\b(we|let's)\b.*\b(together|someday|in the future)\b",
    ),
    _event(
        "gratitude",
        "appreciation",
        r"(谢谢|感谢|感激)(.+?)(陪伴|聊天|帮助|支持)"
        r"|\bthank(?:s| you) for\b.*\b(being there|listening|chatting|talking|help|helping|support)\b",
    ),
)


DEFAULT_DISCLOSURE_KEYWORDS: tuple[str, ...] = (
    "我的名字", "我叫", "我是", "我的工作", "我的家", "我的父母",
    "我喜欢", "我讨厌", "我的梦想", "我的秘密", "我害怕",
    "我希望", "我想要", "我觉得", "我认为",
    "my name is", "i'm called", "my job", "my family", "my parents",
    "i like", "i love", "i hate", "my dream", "my secret",
    "i'm afraid", "i am afraid", "i hope", "i want", "i feel", "i think",
)

DEFAULT_POSITIVE_EMOTIONS: frozenset[str] = frozenset({"happy", "excited"})
DEFAULT_NEGATIVE_EMOTIONS: frozenset[str] = frozenset({"sad", "angry", "anxious", "upset", "apologetic"})


@dataclass(frozen=True, slots=True)
class ExtractionRules:
    profile_rules: tuple[ProfileRule, ...] = DEFAULT_PROFILE_RULES
    topic_keywords: Mapping[str, tuple[str, ...]] = field(default_factory=lambda: dict(DEFAULT_TOPIC_KEYWORDS))
    importance: ImportanceRules = field(default_factory=ImportanceRules)
    min_topic_sentence_chars: int = 5
    max_value_chars: int = 80


@dataclass(frozen=True, slots=True)
class RelationshipRules:
    disclosure_keywords: tuple[str, ...] = DEFAULT_DISCLOSURE_KEYWORDS
    special_events: tuple[SpecialEventRule, ...] = DEFAULT_SPECIAL_EVENTS
    positive_emotions: frozenset[str] = DEFAULT_POSITIVE_EMOTIONS
    negative_emotions: frozenset[str] = DEFAULT_NEGATIVE_EMOTIONS


DEFAULT_EXTRACTION_RULES = ExtractionRules()
DEFAULT_RELATIONSHIP_RULES = RelationshipRules()
