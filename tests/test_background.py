import json
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from charforge import create_app
from charforge.config import TestConfig
from charforge.services import background, llm


@pytest.fixture
def app_ctx():
    app = create_app(TestConfig)
    ctx = app.app_context()
    ctx.push()
    yield app
    ctx.pop()


@pytest.fixture
def brief():
    return background.CharacterBrief(
        name="Lyra", class_type="Bard", level=3, alignment="Chaotic Good", race="Half-Elf"
    )


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


def test_mock_provider_background_is_used_without_fallback(app_ctx, brief):
    result = background.generate_background(brief)

    assert result.background == llm.MOCK_BACKGROUND["background"]
    assert result.personality_traits == llm.MOCK_BACKGROUND["personality_traits"]
    assert not result.used_fallback
    assert "level 3 Chaotic Good Half-Elf Bard named Lyra" in result.prompt


def test_fenced_json_response_is_parsed(app_ctx, brief):
    payload = {
        "background": "Grew up backstage.",
        "personality_traits": ["Witty", {"trait": "Restless"}, "Witty", "", "Kind", "Loud", "Bold"],
    }
    service = CannedService("Here you go:\n```json\n" + json.dumps(payload) + "\n```")

    result = background.generate_background(brief, service=service)

    assert result.background == "Grew up backstage."
    assert result.personality_traits == ["Witty", "Restless", "Kind", "Loud"]
    assert not result.used_fallback
    assert service.prompts[0][1] == background.SYSTEM_PROMPT


def test_sectioned_response_is_joined(app_ctx, brief):
    service = CannedService(
        json.dumps(
            {
                "early_life": "Born at sea.",
                "recent_history": "Joined a troupe.",
                "traits": ["Calm", "Curious"],
            }
        )
    )

    result = background.generate_background(brief, service=service)

    assert result.background == "Born at sea.\n\nJoined a troupe."
    assert result.personality_traits == ["Calm", "Curious"]


def test_provider_error_falls_back(app_ctx, brief):
    service = CannedService(error=llm.ProviderError("Failed to process chat request: timeout"))

    result = background.generate_background(brief, service=service)

    assert result.used_fallback
    assert result.background == "A mysterious Bard with an untold story..."
    assert len(result.personality_traits) >= background.MIN_TRAITS
    assert result.prompt


@pytest.mark.parametrize("response", ["", "not json at all", "{broken", '["list"]', '{"background": "  "}'])
def test_unusable_output_falls_back(app_ctx, brief, response):
    result = background.generate_background(brief, service=CannedService(response))
    assert result.used_fallback


def test_brief_from_mapping_validates_fields():
    brief = background.CharacterBrief.from_mapping(
        {"name": " Thorn ", "class_type": "Ranger", "level": "5", "race": ""}
    )
    assert brief == background.CharacterBrief(name="Thorn", class_type="Ranger", level=5)

    with pytest.raises(background.BackgroundGenerationError):
        background.CharacterBrief.from_mapping({"name": "", "class_type": "Ranger"})
    with pytest.raises(background.BackgroundGenerationError):
        background.CharacterBrief.from_mapping({"name": "Thorn", "class_type": "Pirate"})
    with pytest.raises(background.BackgroundGenerationError):
        background.CharacterBrief.from_mapping({"name": "Thorn", "class_type": "Ranger", "level": 21})
    with pytest.raises(background.BackgroundGenerationError):
        background.CharacterBrief.from_mapping(
            {"name": "Thorn", "class_type": "Ranger", "alignment": "Sideways"}
        )


@pytest.mark.parametrize(
    "traits",
    [[], ["Brave"], ["Brave", "  ", {"description": ""}], "Brave, Loyal"],
)
def test_too_few_traits_falls_back(app_ctx, brief, traits):
    service = CannedService(json.dumps({"background": "Raised by wolves.", "personality_traits": traits}))

    result = background.generate_background(brief, service=service)

    assert result.used_fallback
    assert result.background == "A mysterious Bard with an untold story..."
    assert background.MIN_TRAITS <= len(result.personality_traits) <= background.MAX_TRAITS


def test_two_traits_are_enough(app_ctx, brief):
    service = CannedService(json.dumps({"background": "Raised by wolves.", "personality_traits": ["Brave", "Loyal"]}))

    result = background.generate_background(brief, service=service)

    assert not result.used_fallback
    assert result.personality_traits == ["Brave", "Loyal"]
