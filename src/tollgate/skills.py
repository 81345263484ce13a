"""
Skill Registry

A skill is a canned system prompt applied to caller input. Inline skills are
answered synchronously and billed; queued skills become jobs.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .errors import UnknownSkill


@dataclass(frozen=True)
class Skill:
    key: str
    title: str
    system_prompt: str
    max_tokens: int = 400
    kind: str = "text"
    queued: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "title": self.title, "queued": self.queued}


SKILLS: Dict[str, Skill] = {
    s.key: s
    for s in [
        Skill(
            "summarize", "Summarize",
            "You are a precise summarizer. Output 5 crisp bullets only.",
            max_tokens=300, kind="bullets",
        ),
        Skill(
            "explain", "Explain Simply",
            "Explain simply for a smart 12-year-old. Use short sentences.",
            max_tokens=400, kind="explanation",
        ),
        Skill(
            "action_items", "Action Items",
            "Extract ordered, actionable tasks. Start each with a verb. Include owners if present.",
            max_tokens=320, kind="tasks",
        ),
        Skill(
            "translate", "Translate",
            "Translate to the requested language. Keep meaning; no extra commentary.",
            max_tokens=512, kind="translation",
        ),
        Skill(
            "rag_lite", "Smart Search (Lite)",
            "Answer concisely. If unsure, say what info is needed. Avoid speculation.",
            max_tokens=512, kind="answer",
        ),
        Skill(
            "voice_reply", "Voice Reply",
            "Compose a short spoken-style answer (2-4 sentences).",
            max_tokens=180, kind="speech_text",
        ),
        Skill(
            "sketch_to_app", "Sketch to App",
            "",
            kind="job", queued=True,
        ),
    ]
}


def get_skill(key: Optional[str]) -> Skill:
    skill = SKILLS.get((key or "").strip())
    if skill is None:
        raise UnknownSkill(key or "")
    return skill


def list_skills() -> List[Dict[str, Any]]:
    return [s.to_dict() for s in SKILLS.values()]


def system_prompt_for(skill: Skill, params: Optional[Dict[str, Any]] = None) -> str:
    """Final system prompt; ``translate`` names the target language when given."""
    params = params or {}
    target = params.get("to")
    if skill.key == "translate" and isinstance(target, str) and target.strip():
        return f"Translate into {target[:20]}. Keep meaning; no extra commentary."
    return skill.system_prompt
