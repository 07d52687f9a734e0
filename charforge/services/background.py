from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from flask import current_app

from .llm import LLMError, LLMService


CLASSES = (
    "Barbarian",
    "Bard",
    "Cleric",
    "Druid",
    "Fighter",
    "Monk",
    "Paladin",
    "Ranger",
    "Rogue",
    "Sorcerer",
    "Warlock",
    "Wizard",
)
ALIGNMENTS = (
    "Lawful Good",
    "Neutral Good",
    "Chaotic Good",
    "Lawful Neutral",
    "True Neutral",
    "Chaotic Neutral",
    "Lawful Evil",
    "Neutral Evil",
    "Chaotic Evil",
)

MIN_TRAITS = 2
MAX_TRAITS = 4

SYSTEM_PROMPT = (
    "You are a D&D character background generator. Create unique and compelling background "
    "stories that fit the character's class, race, and alignment. Explain how the character "
    "acquired their abilities and what motivates them, including key life events, "
    "relationships, and personal philosophies.\n\n"
    "Respond with a JSON object containing a 'background' string and a "
    f"'personality_traits' array of {MIN_TRAITS} to {MAX_TRAITS} short strings."
)


class BackgroundGenerationError(RuntimeError):
    """Raised when a character brief cannot be turned into a background."""


@dataclass
class CharacterBrief:
    name: str
    class_type: str
    level: int = 1
    alignment: str = "True Neutral"
    race: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CharacterBrief":
        name = (str(data.get("name") or "")).strip()
        if not name:
            raise BackgroundGenerationError("Give the character a name before generating a background.")

        class_type = (str(data.get("class_type") or "")).strip()
        if class_type not in CLASSES:
            raise BackgroundGenerationError(f"'{class_type}' is not a valid class.")

        alignment = (str(data.get("alignment") or "True Neutral")).strip()
        if alignment not in ALIGNMENTS:
            raise BackgroundGenerationError(f"'{alignment}' is not a valid alignment.")

        try:
            level = int(data.get("level") or 1)
        except (TypeError, ValueError) as exc:
            raise BackgroundGenerationError("Level must be a whole number.") from exc
        if not 1 <= level <= 20:
            raise BackgroundGenerationError("Level must be between 1 and 20.")

        race = (str(data.get("race") or "")).strip() or None
        return cls(name=name, class_type=class_type, level=level, alignment=alignment, race=race)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def describe(self) -> str:
        race = f"{self.race} " if self.race else ""
        return f"level {self.level} {self.alignment} {race}{self.class_type} named {self.name}"


@dataclass
class BackgroundResult:
    background: str
    personality_traits: List[str] = field(default_factory=list)
    used_fallback: bool = False
    prompt: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def generate_background(brief: CharacterBrief, *, service: Optional[LLMService] = None) -> BackgroundResult:
    """Draft a background narrative and personality traits for ``brief``.

    Provider failures and unusable output never fail the job; the heuristic
    fallback is returned instead and ``used_fallback`` is set.
    """

    prompt = (
        f"Generate a background for a {brief.describe()}. Consider their class abilities, "
        "race, and alignment, and include their upbringing, training, and what led them "
        "to become an adventurer."
    )

    response_text: Optional[str] = None
    try:
        llm = service or LLMService.from_config(current_app.config)
        response_text = llm.chat([{"role": "user", "content": prompt}], system_prompt=SYSTEM_PROMPT)
    except LLMError as exc:
        current_app.logger.warning(
            "LLM background generation failed; using fallback background. Error: %s", exc
        )

    parsed = _parse_background_response(response_text)
    if parsed is None:
        fallback = _fallback_background(brief)
        fallback.prompt = prompt
        return fallback

    background, traits = parsed
    return BackgroundResult(background=background, personality_traits=traits, prompt=prompt)


def extract_json_object(raw_text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Pull the JSON object out of an LLM reply, fenced or embedded in prose."""

    text = (raw_text or "").strip()
    if not text:
        return None

    fence_match = re.search(r"```(?:json)?\s*(.*?)```", text, re.DOTALL)
    if fence_match:
        text = fence_match.group(1).strip()

    if not text.startswith("{"):
        brace_index = text.find("{")
        if brace_index == -1:
            return None
        text = text[brace_index:]

    try:
        parsed: Any = json.loads(text)
    except json.JSONDecodeError:
        current_app.logger.warning("Unable to parse LLM output as JSON: %s", text[:200])
        return None

    if not isinstance(parsed, dict):
        return None
    return parsed


def _parse_background_response(raw_text: Optional[str]) -> Optional[Tuple[str, List[str]]]:
    parsed = extract_json_object(raw_text)
    if parsed is None:
        return None

    background = clean_field(parsed.get("background"))
    if not background:
        sections = [
            clean_field(parsed.get(key))
            for key in ("early_life", "pivotal_moments", "recent_history", "unresolved_mysteries")
        ]
        background = "\n\n".join(section for section in sections if section) or None
    if not background:
        return None

    traits_raw = parsed.get("personality_traits") or parsed.get("traits") or []
    traits: List[str] = []
    if isinstance(traits_raw, list):
        for entry in traits_raw:
            if isinstance(entry, dict):
                entry = entry.get("trait") or entry.get("description")
            cleaned = clean_field(entry)
            if cleaned and cleaned not in traits:
                traits.append(cleaned)

    if len(traits) < MIN_TRAITS:
        current_app.logger.warning(
            "Background output had %d personality traits; expected at least %d.",
            len(traits),
            MIN_TRAITS,
        )
        return None
    return background, traits[:MAX_TRAITS]


def clean_field(value: object) -> Optional[str]:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None


def _fallback_background(brief: CharacterBrief) -> BackgroundResult:
    return BackgroundResult(
        background=f"A mysterious {brief.class_type} with an untold story...",
        personality_traits=["Keeps to themselves", "Values actions over words"],
        used_fallback=True,
    )
