"""Shared fakes: a scripted provider that never touches the network."""

import pytest

from grokloop.content import (
    MODEL,
    Candidate,
    Content,
    FinishReason,
    GenerationResponse,
    Part,
)


def make_response(*parts, finish=FinishReason.OTHER):
    """A single-candidate response holding parts (strings become text parts)."""
    parts = [Part.from_text(p) if isinstance(p, str) else p for p in parts]
    return GenerationResponse(
        candidates=(Candidate(Content(MODEL, parts), finish_reason=finish),)
    )


class FakeProvider:
    """Replays one scripted stream per request.

    Each script entry is a list of GenerationResponse objects; an Exception
    in the list is raised at that point of the stream instead.
    """

    def __init__(self, scripts=None):
        self.scripts = list(scripts or [])
        self.requests = []

    def generate_stream(self, request):
        self.requests.append(request)
        script = self.scripts.pop(0) if self.scripts else [make_response("")]
        for item in script:
            if isinstance(item, BaseException):
                raise item
            yield item

    def generate(self, request):
        responses = list(self.generate_stream(request))
        return responses[-1] if responses else GenerationResponse()

    def count_tokens(self, request):
        return 0


@pytest.fixture
def fake_provider():
    def _make(*scripts):
        return FakeProvider(scripts)

    return _make
