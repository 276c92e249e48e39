"""助手人格目录与系统提示词加载工具。

每个助手人格对应 prompts/<locale>/<assistant_id>.md 中的一份系统提示词，
目录在进程内只读，通过 ASSISTANTS 按 ID 查询。
"""

from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import List, Mapping


PROMPTS_DIR = Path(__file__).resolve().parent

DEFAULT_ASSISTANT = "eggcat"


def load_system_prompt(assistant_id: str, locale: str = "zh") -> str:
    """根据助手 ID 和语言加载系统提示词文本。"""

    fname = PROMPTS_DIR / locale / f"{assistant_id}.md"
    return fname.read_text(encoding="utf-8").strip()


@dataclass(frozen=True)
class AssistantPersona:
    id: str
    display_name: str
    description: str
    system_prompt: str


def _persona(assistant_id: str, display_name: str, description: str) -> AssistantPersona:
    return AssistantPersona(
        id=assistant_id,
        display_name=display_name,
        description=description,
        system_prompt=load_system_prompt(assistant_id),
    )


ASSISTANTS: Mapping[str, AssistantPersona] = MappingProxyType({
    "eggcat": _persona("eggcat", "🐱 EggCat", "可爱的猫娘AI助手，轻松愉快的创意交流"),
    "creative": _persona("creative", "💡 创意助手", "专业的游戏设计顾问，深度分析创意可行性"),
    "technical": _persona("technical", "🔧 技术顾问", "技术导向的AI，关注实现方案和技术细节"),
})


def list_assistants() -> List[AssistantPersona]:
    return list(ASSISTANTS.values())
