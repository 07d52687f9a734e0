import json
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from charforge import create_app
from charforge.config import TestConfig
from charforge.services import llm, personality
from charforge.services.background import CharacterBrief


@pytest.fixture
def app_ctx():
    app = create_app(TestConfig)
    ctx = app.app_context()
    ctx.push()
    yield app
    ctx.pop()


@pytest.fixture
def brief():
    return CharacterBrief(name="Lyra", class_type="Bard", level=3, alignment="Chaotic Good", race="Half-Elf")


class CannedService:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.prompts = []

    def chat(self, messages, *, system_prompt=None):
        self.prompts.append((messages[-1]["content"], system_prompt))
        if self.error is not None:
            raise self.error
        return self.response


def _entries(key, count):
    return [{key: f"{key} {n}", "manifestation": f"shows {key} {n}"} for n in range(count)]


def test_mock_provider_details_are_used(app_ctx, brief):
    result = personality.generate_personality_details(
        brief, "Raised in Silverkeep.", ["Witty", "Restless"]
    )

    assert not result.used_fallback
    assert result.ideals == llm.MOCK_PERSONALITY_DETAILS["ideals"]
    assert result.bonds == llm.MOCK_PERSONALITY_DETAILS["bonds"]
    assert result.flaws == llm.MOCK_PERSONALITY_DETAILS["flaws"]
    assert "Consider their background: Raised in Silverkeep." in result.prompt
    assert "Witty, Restless" in result.prompt


def test_entries_are_cleaned_and_capped(app_ctx, brief):
    payload = {
        "ideals": _entries("ideal", 4),
        "bonds": _entries("bond", 2) + [{"bond": "Half a bond"}, "not an object"],
        "flaws": [{"flaw": "  Greed ", "manifestation": " Counts coins twice "}] + _entries("flaw", 1),
    }
    service = CannedService("```json\n" + json.dumps(payload) + "\n```")

    result = personality.generate_personality_details(brief, "Raised in Silverkeep.", service=service)

    assert not result.used_fallback
    assert len(result.ideals) == personality.MAX_DETAILS
    assert result.bonds == _entries("bond", 2)
    assert result.flaws[0] == {"flaw": "Greed", "manifestation": "Counts coins twice"}
    assert service.prompts[0][1] == personality.SYSTEM_PROMPT


@pytest.mark.parametrize("missing", ["ideals", "bonds", "flaws"])
def test_short_section_falls_back(app_ctx, brief, missing):
    payload = {
        "ideals": _entries("ideal", 2),
        "bonds": _entries("bond", 2),
        "flaws": _entries("flaw", 2),
    }
    payload[missing] = payload[missing][:1]

    result = personality.generate_personality_details(
        brief, "Raised in Silverkeep.", service=CannedService(json.dumps(payload))
    )

    assert result.used_fallback
    assert result.ideals[0]["ideal"] == "Compassion"


def test_provider_error_falls_back(app_ctx, brief):
    service = CannedService(error=llm.ProviderError("Failed to process chat request: timeout"))

    result = personality.generate_personality_details(brief, "", service=service)

    assert result.used_fallback
    assert result.prompt
    for section, key in personality.DETAIL_SECTIONS.items():
        entries = getattr(result, section)
        assert personality.MIN_DETAILS <= len(entries) <= personality.MAX_DETAILS
        assert all(entry[key] and entry["manifestation"] for entry in entries)


@pytest.mark.parametrize(
    "alignment, ideal",
    [("Lawful Evil", "Power"), ("True Neutral", "Balance"), ("Neutral Good", "Compassion")],
)
def test_fallback_ideal_follows_alignment(app_ctx, alignment, ideal):
    brief = CharacterBrief(name="Thorn", class_type="Ranger", alignment=alignment)

    result = personality.generate_personality_details(brief, "", service=CannedService("no json"))

    assert result.ideals[0]["ideal"] == ideal
    assert "ranger" in result.bonds[0]["bond"]
