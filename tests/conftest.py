"""Shared fixtures: a small blueprint and a scripted provider."""

import json
import re
from typing import Awaitable, Callable, Optional, Union

import pytest
import yaml

from novel_engine.config import Config
from novel_engine.errors import GenerationError, Result
from novel_engine.models.blueprint import Blueprint
from novel_engine.models.generation import TokenUsage
from novel_engine.orchestrator import InMemoryCheckpointStore, SessionOrchestrator
from novel_engine.events import EventChannel
from novel_engine.providers.base import (
    BaseProvider,
    GenerationRequest,
    ProviderResponse,
    ProviderType,
    StreamChunk,
)
from novel_engine.providers.factory import ProviderFactory

BLUEPRINT_DATA = {
    "title": "The Lantern Keeper",
    "premise": "A young keeper uncovers a smuggling ring operating from her lighthouse.",
    "genre": "Mystery",
    "target_audience": "Adult",
    "point_of_view": "third_person_limited",
    "tense": "past",
    "target_word_count": 480,
    "characters": [
        {
            "name": "Mara Quill",
            "role": "protagonist",
            "description": "Nineteen, stubborn, newly appointed keeper",
            "traits": ["curious", "proud", "loyal"],
            "goals": "Keep the light burning and learn who is using it",
            "voice": "Short, dry sentences",
            "aliases": ["Mara"],
        },
        {
            "name": "Tobias Wren",
            "role": "mentor",
            "description": "The retiring keeper",
            "traits": ["patient", "secretive"],
            "aliases": ["Tobias"],
        },
        {
            "name": "Silas Crane",
            "role": "antagonist",
            "description": "Harbor master with a second ledger",
            "traits": ["charming", "ruthless"],
        },
    ],
    "locations": [
        {
            "name": "Harbor Lighthouse",
            "description": "A white tower above the reef",
            "atmosphere": "Wind, salt and old oil",
            "is_primary": True,
        },
        {
            "name": "Saltmarsh Market",
            "description": "Stalls on stilts over the mudflats",
        },
    ],
    "world_rules": ["The light must be lit at sunset every night"],
    "plot": {
        "central_conflict": "Mara against the smugglers who signal from her tower",
        "stakes": "Ships wrecked on the reef",
        "subplots": [
            {"name": "Smuggler Ring", "description": "Lights signal cargo drops", "introduced_chapter": 1},
        ],
        "setups": [],
    },
    "style": {
        "voice": "Close third person",
        "prose_style": "Spare and sensory",
        "tone": "Brooding",
        "words_to_avoid": ["suddenly"],
    },
    "tracked_objects": [
        {"id": "lantern", "name": "brass lantern", "initial_location": "Harbor Lighthouse"},
    ],
    "chapters": [
        {
            "number": n,
            "title": f"Night {n}",
            "outline": f"Night {n} at the lighthouse.",
            "beats": ["Mara climbs the tower", "Tobias waits"],
            "pov_character": "Mara Quill",
            "characters": ["Mara Quill", "Tobias Wren"],
            "locations": ["Harbor Lighthouse"],
            "target_words": 120,
            "story_day": n,
        }
        for n in range(1, 5)
    ],
}

CHAPTER_TEMPLATE = """Mara Quill climbed the spiral stairs of the Harbor Lighthouse as night {number} began. Rain hammered against the thick glass. Above her, the brass lantern swayed on its iron hook.

"You are late again," Tobias Wren said from the shadows near the gallery door.

She shrugged off her soaked coat and hung it beside the old chart table. "The tide turned early tonight, and the ferry would not wait for anyone."

Tobias studied her face for a long moment before speaking. He had kept this light burning for thirty winters, and he knew when a keeper carried bad news. Mara told him about the strange ship anchored beyond the reef, its hull painted black, its decks silent. Neither of them slept. They watched the water together until a pale grey dawn crept over the cliffs."""

REVISED_CLOSING = "\n\nMorning light finally reached the harbor."

_CHAPTER_IN_USER = re.compile(r"Write Chapter (\d+) of")
_CHAPTER_IN_SYSTEM = re.compile(r"## CHAPTER (\d+)")

Reply = Union[str, GenerationError]


def chapter_text(number: int, revised: bool = False) -> str:
    text = CHAPTER_TEMPLATE.format(number=number)
    return text + REVISED_CLOSING if revised else text


def chapter_of(request: GenerationRequest) -> Optional[int]:
    for pattern, text in ((_CHAPTER_IN_USER, request.user_prompt), (_CHAPTER_IN_SYSTEM, request.system_prompt)):
        m = pattern.search(text)
        if m:
            return int(m.group(1))
    return None


def is_draft(request: GenerationRequest) -> bool:
    return _CHAPTER_IN_USER.search(request.user_prompt) is not None


def story_responder(review_score: Callable[[GenerationRequest], float] = lambda r: 90) -> Callable:
    """Replies like a well-behaved model for every prompt the engine sends."""

    def respond(request: GenerationRequest) -> Reply:
        system, user = request.system_prompt, request.user_prompt
        if "fiction editor reviewing a single chapter" in system:
            score = review_score(request)
            weaknesses = [] if score >= 70 else ["The prose feels flat"]
            return json.dumps({"score": score, "strengths": ["Atmosphere"], "weaknesses": weaknesses})
        if "continuity editor" in system:
            return json.dumps({"issues": []})
        if "track character state" in system:
            return json.dumps({"characters": [{"characterName": "Mara", "location": "Harbor Lighthouse"}]})
        if "key plot events" in system:
            return json.dumps({"events": ["Mara reports a black ship"]})
        if "faithful chapter summaries" in system:
            return (
                "BRIEF: Mara reports a black ship to Tobias.\n"
                "DETAILED: Mara climbs the tower in the rain and tells Tobias about a silent ship.\n"
                "EVENTS:\n- Mara arrives late\n- Mara reports a black ship"
            )
        number = chapter_of(request) or 1
        if "Revise the chapter below" in user:
            return chapter_text(number, revised=True)
        if "Original draft:" in user:
            return chapter_text(number) + "\n\nThe reef waited below."
        if is_draft(request):
            return chapter_text(number)
        return "Edited text."

    return respond


class FakeProvider(BaseProvider):
    """Scripted provider recording every request it receives."""

    def __init__(
        self,
        responder: Optional[Callable[[GenerationRequest], Reply]] = None,
        provider_type: ProviderType = ProviderType.CLAUDE,
        api_key: str = "test-key",
        streaming: bool = False,
        hook: Optional[Callable[[GenerationRequest], Awaitable[None]]] = None,
    ):
        super().__init__(api_key=api_key)
        self._type = provider_type
        self._streaming = streaming
        self.responder = responder or story_responder()
        self.hook = hook
        self.calls: list[GenerationRequest] = []

    @property
    def provider_type(self) -> ProviderType:
        return self._type

    @property
    def supports_streaming(self) -> bool:
        return self._streaming

    def drafts(self, chapter_number: int) -> list[GenerationRequest]:
        return [c for c in self.calls if is_draft(c) and chapter_of(c) == chapter_number]

    async def generate(self, request: GenerationRequest) -> Result[ProviderResponse]:
        self.calls.append(request)
        if self.hook is not None:
            await self.hook(request)
        reply = self.responder(request)
        if isinstance(reply, GenerationError):
            return Result.failure(reply)
        return Result.success(ProviderResponse(
            content=reply,
            model=request.model,
            usage=TokenUsage(
                input_tokens=(len(request.system_prompt) + len(request.user_prompt)) // 4,
                output_tokens=len(reply) // 4,
            ),
            finish_reason="stop",
        ))

    async def generate_stream(self, request: GenerationRequest):
        self.calls.append(request)
        reply = self.responder(request)
        words = reply.split(" ")
        for i, word in enumerate(words):
            yield StreamChunk(content=word if i == 0 else " " + word)
        yield StreamChunk(
            content="",
            is_final=True,
            finish_reason="stop",
            usage=TokenUsage(input_tokens=100, output_tokens=len(reply) // 4),
        )


@pytest.fixture
def blueprint():
    return Blueprint.from_dict(BLUEPRINT_DATA)


@pytest.fixture
def blueprint_file(tmp_path):
    path = tmp_path / "blueprint.yaml"
    path.write_text(yaml.safe_dump(BLUEPRINT_DATA, sort_keys=False), encoding="utf-8")
    return path


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def factory(provider):
    return ProviderFactory({ProviderType.CLAUDE: provider})


@pytest.fixture
def config():
    return Config(generation={"model_review": False})


@pytest.fixture
def events():
    return EventChannel()


@pytest.fixture
def store():
    return InMemoryCheckpointStore()


@pytest.fixture
def orchestrator(config, factory, events, store):
    return SessionOrchestrator.from_config(config, providers=factory, events=events, store=store)
