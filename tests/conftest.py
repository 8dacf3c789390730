import os
import tempfile

os.environ.setdefault("TAVERN_DATA_DIR", tempfile.mkdtemp(prefix="tavern-cards-"))

import pytest  # noqa: E402

from tavern_cards.library import CharacterLibrary  # noqa: E402
from tests.helpers import b64_json, make_avatar, make_png, text_chunk  # noqa: E402

ARIA = {"name": "Aria", "description": "A guide.", "first_mes": "Hello traveler."}


@pytest.fixture
def aria_png() -> bytes:
    return make_png(text_chunk("chara", b64_json(ARIA)))


@pytest.fixture
def avatar_png() -> bytes:
    return make_avatar()


@pytest.fixture
def library(tmp_path) -> CharacterLibrary:
    return CharacterLibrary(tmp_path / "library")


@pytest.fixture
def rich_card() -> dict:
    return {
        "spec": "chara_card_v2",
        "spec_version": "2.0",
        "data": {
            "name": "Mira",
            "description": "A cartographer.",
            "personality": "curious",
            "first_mes": "Where to?",
            "alternate_greetings": ["Hey", "Hello again"],
            "tags": ["explorer", "mapmaker"],
            "extensions": {"depth_prompt": {"depth": 4, "prompt": "stay in character"}},
            "character_book": {
                "name": "Atlas",
                "scan_depth": 3,
                "entries": [
                    {
                        "keys": ["harbor", "port"],
                        "content": "The harbor is busy.",
                        "insertion_order": 10,
                        "extensions": {"probability": 100},
                    },
                    {"keys": ["tower"], "content": "The tower is old.", "enabled": False},
                ],
            },
            "talkativeness": "0.7",
            "custom_field": {"nested": [1, 2, 3]},
        },
    }
