"""Ideals, bonds and flaws drafted from a character's finished background."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from flask import current_app

from .background import CharacterBrief, clean_field, extract_json_object
from .llm import LLMError, LLMService

MIN_DETAILS = 2
MAX_DETAILS = 3

# Section name -> key holding the core concept inside each entry.
DETAIL_SECTIONS = {
    "ideals": "ideal",
    "bonds": "bond",
    "flaws": "flaw",
}

SYSTEM_PROMPT = (
    "You are a D&D character personality generator. Create deep and nuanced personality "
    "details that reflect the character's background, class, and alignment. Focus on "
    "ideals, bonds, and flaws that drive the character's actions and decisions. Each "
    "element has a core concept and a specific manifestation in the character's behavior.\n\n"
    "Respond with a JSON object with 'ideals', 'bonds' and 'flaws' arrays of "
    f"{MIN_DETAILS} to {MAX_DETAILS} objects. Ideals use the keys 'ideal' and "
    "'manifestation', bonds use 'bond' and 'manifestation', flaws use 'flaw' and "
    "'manifestation'."
)


@dataclass
class PersonalityDetailsResult:
    ideals: List[Dict[str, str]] = field(default_factory=list)
    bonds: List[Dict[str, str]] = field(default_factory=list)
    flaws: List[Dict[str, str]] = field(default_factory=list)
    used_fallback: bool = False
    prompt: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def generate_personality_details(
    brief: CharacterBrief,
    background: str,
    personality_traits: Optional[Sequence[str]] = None,
    *,
    service: Optional[LLMService] = None,
) -> PersonalityDetailsResult:
    """Draft ideals, bonds and flaws for ``brief`` in light of its background.

    Every section must come back with two or three complete entries; anything
    less and the whole result is replaced by the alignment-based fallback.
    """

    traits = ", ".join(personality_traits or []) or "none recorded"
    prompt = (
        f"Generate personality details for a {brief.describe()}.\n"
        f"Consider their background: {background.strip() or 'unknown'}\n"
        f"And their existing personality traits: {traits}\n\n"
        "Create a set of ideals (what they believe in), bonds (what connects them), and "
        "flaws (their weaknesses). Each should include both the core concept and how it "
        "manifests in their behavior."
    )

    response_text: Optional[str] = None
    try:
        llm = service or LLMService.from_config(current_app.config)
        response_text = llm.chat([{"role": "user", "content": prompt}], system_prompt=SYSTEM_PROMPT)
    except LLMError as exc:
        current_app.logger.warning(
            "LLM personality generation failed; using fallback details. Error: %s", exc
        )

    sections = _parse_details_response(response_text)
    if sections is None:
        fallback = _fallback_details(brief)
        fallback.prompt = prompt
        return fallback

    return PersonalityDetailsResult(prompt=prompt, **sections)


def _parse_details_response(raw_text: Optional[str]) -> Optional[Dict[str, List[Dict[str, str]]]]:
    parsed = extract_json_object(raw_text)
    if parsed is None:
        return None

    sections: Dict[str, List[Dict[str, str]]] = {}
    for section, concept_key in DETAIL_SECTIONS.items():
        entries = _clean_entries(parsed.get(section), concept_key)
        if len(entries) < MIN_DETAILS:
            current_app.logger.warning(
                "Personality output had %d complete %s; expected at least %d.",
                len(entries),
                section,
                MIN_DETAILS,
            )
            return None
        sections[section] = entries[:MAX_DETAILS]
    return sections


def _clean_entries(raw: object, concept_key: str) -> List[Dict[str, str]]:
    if not isinstance(raw, list):
        return []
    entries: List[Dict[str, str]] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        concept = clean_field(item.get(concept_key))
        manifestation = clean_field(item.get("manifestation"))
        if concept and manifestation:
            entries.append({concept_key: concept, "manifestation": manifestation})
    return entries


def _fallback_details(brief: CharacterBrief) -> PersonalityDetailsResult:
    moral_axis = brief.alignment.split()[-1]
    ideal = {
        "Good": ("Compassion", "Stops to help anyone in need, even at a cost to the mission."),
        "Evil": ("Power", "Weighs every choice by what it gains them."),
    }.get(moral_axis, ("Balance", "Avoids taking sides until the stakes are clear."))

    return PersonalityDetailsResult(
        ideals=[
            {"ideal": ideal[0], "manifestation": ideal[1]},
            {"ideal": "Self-reliance", "manifestation": "Prefers to solve problems alone."},
        ],
        bonds=[
            {
                "bond": f"The mentor who first trained them as a {brief.class_type.lower()}",
                "manifestation": "Measures each decision against what that mentor would say.",
            },
            {
                "bond": "The place they once called home",
                "manifestation": "Takes any threat to it personally.",
            },
        ],
        flaws=[
            {"flaw": "Slow to trust strangers", "manifestation": "Keeps new allies at arm's length."},
            {"flaw": "Stubborn", "manifestation": "Rarely changes course once a plan is set."},
        ],
        used_fallback=True,
    )
