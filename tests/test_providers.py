"""Tests for provider contracts, response decoding and the OpenAI adapters."""

import asyncio
import json
from types import SimpleNamespace

import numpy as np
import pytest

from notes_recall.errors import ProviderFailure
from notes_recall.providers import (
    AnswerResult,
    ChatMessage,
    ContextChunk,
    EmbeddingProvider,
    OpenAIAnswerGenerator,
    OpenAIConceptExtractor,
    OpenAIEmbedder,
    SentenceTransformerEmbedder,
    call_provider,
    check_embeddings,
    clamp_contexts,
    clamp_history,
    format_contexts,
)
from notes_recall.providers import _openai_client


class FakeCompletions:
    def __init__(self, content, finish_reason="stop"):
        self.content = content
        self.finish_reason = finish_reason
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message, finish_reason=self.finish_reason)])


def _chat_client(content, finish_reason="stop"):
    completions = FakeCompletions(content, finish_reason)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


CONTEXTS = [
    ContextChunk(chunk_id="n1:abc", note_id="n1", note_title="Cells", text="Cells use glucose."),
    ContextChunk(chunk_id="n2:def", note_id="n2", note_title="ATP", text="ATP stores energy."),
]


class TestCheckEmbeddings:

    def test_accepts_well_formed_vectors(self):
        assert check_embeddings([[1, 2], [3.5, 4]], 2) == [[1.0, 2.0], [3.5, 4.0]]

    def test_accepts_numpy_rows(self):
        out = check_embeddings(list(np.ones((2, 3), dtype="float32")), 2)
        assert out == [[1.0, 1.0, 1.0], [1.0, 1.0, 1.0]]

    @pytest.mark.parametrize(
        "vectors, expected",
        [
            ("not a list", 1),
            ([[1.0, 0.0]], 2),
            ([[]], 1),
            ([[1.0, 0.0], [1.0]], 2),
            ([[1.0, float("nan")]], 1),
            ([[1.0, float("inf")]], 1),
            ([["a", "b"]], 1),
            ([None], 1),
        ],
    )
    def test_rejects_malformed(self, vectors, expected):
        with pytest.raises(ProviderFailure):
            check_embeddings(vectors, expected)

    def test_failure_names_the_provider(self):
        with pytest.raises(ProviderFailure) as excinfo:
            check_embeddings([], 1, provider="local")
        assert excinfo.value.provider == "local"
        assert str(excinfo.value).startswith("local: ")


class TestCallProvider:

    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def ok():
            return 42

        assert await call_provider("p", ok(), timeout=1.0) == 42

    @pytest.mark.asyncio
    async def test_timeout_becomes_provider_failure(self):
        with pytest.raises(ProviderFailure, match="timed out"):
            await call_provider("slow", asyncio.sleep(1.0), timeout=0.01)

    @pytest.mark.asyncio
    async def test_exceptions_are_wrapped_with_cause(self):
        async def boom():
            raise ConnectionError("refused")

        with pytest.raises(ProviderFailure) as excinfo:
            await call_provider("net", boom(), timeout=None)
        assert isinstance(excinfo.value.__cause__, ConnectionError)
        assert "refused" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_provider_failures_pass_through_unchanged(self):
        original = ProviderFailure("inner", "bad shape")

        async def fail():
            raise original

        with pytest.raises(ProviderFailure) as excinfo:
            await call_provider("outer", fail(), timeout=None)
        assert excinfo.value is original


class TestProtocols:

    def test_embedders_satisfy_protocol(self):
        assert isinstance(SentenceTransformerEmbedder(), EmbeddingProvider)
        assert isinstance(OpenAIEmbedder(api_key="test"), EmbeddingProvider)


class TestSentenceTransformerEmbedder:

    @pytest.mark.asyncio
    async def test_encodes_with_loaded_model(self):
        class FakeModel:
            def __init__(self):
                self.seen = []

            def encode(self, texts, batch_size, convert_to_numpy):
                self.seen.append(list(texts))
                return np.arange(len(texts) * 2, dtype="float64").reshape(len(texts), 2)

        embedder = SentenceTransformerEmbedder("fake-model")
        embedder._model = FakeModel()

        vectors = await embedder.embed(["a", "b"])

        assert vectors == [[0.0, 1.0], [2.0, 3.0]]
        assert embedder._model.seen == [["a", "b"]]

    @pytest.mark.asyncio
    async def test_empty_input_skips_model(self):
        embedder = SentenceTransformerEmbedder("fake-model")
        assert await embedder.embed([]) == []
        assert embedder._model is None


class TestOpenAIAdapters:

    def test_missing_api_key_exits(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(SystemExit):
            _openai_client(None)

    @pytest.mark.asyncio
    async def test_embedder_restores_input_order(self):
        embedder = OpenAIEmbedder(api_key="test")

        async def create(model, input):
            return SimpleNamespace(
                data=[
                    SimpleNamespace(index=1, embedding=[0.0, 1.0]),
                    SimpleNamespace(index=0, embedding=[1.0, 0.0]),
                ]
            )

        embedder._client = SimpleNamespace(embeddings=SimpleNamespace(create=create))
        assert await embedder.embed(["first", "second"]) == [[1.0, 0.0], [0.0, 1.0]]

    @pytest.mark.asyncio
    async def test_concepts_decoded_and_capped(self):
        extractor = OpenAIConceptExtractor(api_key="test", max_concepts=2)
        extractor._client, completions = _chat_client(json.dumps({"concepts": ["ATP", " ", "Krebs cycle", "NADH"]}))

        concepts = await extractor.extract_concepts("how do cells get energy", "[Cells]: glucose")

        assert concepts == ["ATP", "Krebs cycle"]
        call = completions.calls[0]
        assert call["response_format"] == {"type": "json_object"}
        assert "how do cells get energy" in call["messages"][1]["content"]
        assert "[Cells]: glucose" in call["messages"][1]["content"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["not json", '{"concepts": "ATP"}', '{"concepts": [1, 2]}'])
    async def test_bad_concept_payload(self, content):
        extractor = OpenAIConceptExtractor(api_key="test")
        extractor._client, _ = _chat_client(content)
        with pytest.raises(ProviderFailure):
            await extractor.extract_concepts("q", "")

    @pytest.mark.asyncio
    async def test_answer_decodes_camel_case_citations(self):
        generator = OpenAIAnswerGenerator(api_key="test")
        payload = {
            "answer": "Cells burn glucose to make ATP.",
            "citations": [{"chunkId": "n1:abc", "noteId": "n1", "quote": "Cells use glucose."}],
        }
        generator._client, _ = _chat_client(json.dumps(payload))

        result = await generator.answer("how do cells get energy", CONTEXTS)

        assert isinstance(result, AnswerResult)
        assert result.answer == "Cells burn glucose to make ATP."
        assert result.citations[0].chunk_id == "n1:abc"
        assert result.citations[0].note_id == "n1"

    @pytest.mark.asyncio
    async def test_answer_sends_history_and_contexts(self):
        generator = OpenAIAnswerGenerator(api_key="test", max_output_tokens=300)
        generator._client, completions = _chat_client(json.dumps({"answer": "Yes.", "citations": []}))
        history = [ChatMessage(role="user", content="earlier"), ChatMessage(role="assistant", content="reply")]

        await generator.answer("follow-up", CONTEXTS, history)

        call = completions.calls[0]
        roles = [m["role"] for m in call["messages"]]
        assert roles == ["system", "user", "assistant", "user"]
        assert "chunkId: n2:def" in call["messages"][-1]["content"]
        assert call["messages"][-1]["content"].endswith("QUESTION:\nfollow-up")
        assert call["max_tokens"] == 300

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {"answer": "", "citations": []},
            {"citations": []},
            {"answer": ["not", "text"], "citations": []},
        ],
    )
    async def test_bad_answer_payload(self, payload):
        generator = OpenAIAnswerGenerator(api_key="test")
        generator._client, _ = _chat_client(json.dumps(payload))
        with pytest.raises(ProviderFailure):
            await generator.answer("q", CONTEXTS)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "bad_citation",
        [
            {"chunkId": "n1:abc", "noteId": "n1", "quote": ""},
            {"chunkId": "", "noteId": "n1", "quote": "q"},
            {"noteId": "n1", "quote": "q"},
            "not an object",
        ],
    )
    async def test_malformed_citation_is_dropped_and_answer_kept(self, bad_citation):
        generator = OpenAIAnswerGenerator(api_key="test")
        good = {"chunkId": "n2:def", "noteId": "n2", "quote": "ATP stores energy."}
        payload = {"answer": "ATP carries the energy.", "citations": [bad_citation, good]}
        generator._client, _ = _chat_client(json.dumps(payload))

        result = await generator.answer("q", CONTEXTS)

        assert result.answer == "ATP carries the energy."
        assert [c.chunk_id for c in result.citations] == ["n2:def"]

    @pytest.mark.asyncio
    async def test_non_list_citations_become_empty(self):
        generator = OpenAIAnswerGenerator(api_key="test")
        generator._client, _ = _chat_client(json.dumps({"answer": "Yes.", "citations": "n1"}))
        result = await generator.answer("q", CONTEXTS)
        assert result.answer == "Yes."
        assert result.citations == []

    @pytest.mark.asyncio
    async def test_prompt_is_clamped(self):
        generator = OpenAIAnswerGenerator(api_key="test")
        generator._client, completions = _chat_client(json.dumps({"answer": "ok", "citations": []}))
        contexts = [
            ContextChunk(chunk_id=f"n{i}:h", note_id=f"n{i}", note_title=f"T{i}", text="x" * 2400)
            for i in range(12)
        ]
        history = [
            ChatMessage(role="user" if i % 2 == 0 else "assistant", content=f"{i:02d}" + "y" * 4998)
            for i in range(30)
        ]

        await generator.answer("q", contexts, history)

        messages = completions.calls[0]["messages"]
        # System prompt, the last 20 history turns, then the question.
        assert len(messages) == 22
        assert messages[1]["content"].startswith("10")
        assert all(len(m["content"]) == 4000 for m in messages[1:-1])
        prompt = messages[-1]["content"]
        assert prompt.count("chunkId: ") == 8
        assert "chunkId: n7:h" in prompt and "chunkId: n8:h" not in prompt

    @pytest.mark.asyncio
    async def test_truncated_answer_is_a_failure(self):
        generator = OpenAIAnswerGenerator(api_key="test")
        generator._client, _ = _chat_client('{"answer": "Cells bur', finish_reason="length")
        with pytest.raises(ProviderFailure, match="truncated"):
            await generator.answer("q", CONTEXTS)


def test_format_contexts():
    text = format_contexts(CONTEXTS)
    assert text.count("---") == 1
    assert text.startswith("chunkId: n1:abc\nnoteId: n1\nnoteTitle: Cells\ntext: Cells use glucose.")


class TestClamps:

    def _ctx(self, name, text):
        return ContextChunk(chunk_id=f"{name}:h", note_id=name, note_title=name.title(), text=text)

    def test_contexts_capped_in_order(self):
        contexts = [self._ctx(f"n{i}", "abc") for i in range(5)]
        assert [c.note_id for c in clamp_contexts(contexts, max_contexts=3)] == ["n0", "n1", "n2"]

    def test_long_context_is_cut_without_touching_the_input(self):
        original = self._ctx("n1", "x" * 50)
        out = clamp_contexts([original], max_chars_per=10)
        assert out[0].text == "x" * 10
        assert original.text == "x" * 50

    def test_total_budget_stops_before_overflow(self):
        contexts = [self._ctx("a", "1234"), self._ctx("b", "5678"), self._ctx("c", "9")]
        out = clamp_contexts(contexts, max_total_chars=8)
        assert [c.note_id for c in out] == ["a", "b"]

    def test_contexts_without_ids_or_text_are_dropped(self):
        contexts = [
            ContextChunk(chunk_id="", note_id="n1", note_title="", text="abc"),
            ContextChunk(chunk_id="n2:h", note_id="", note_title="", text="abc"),
            self._ctx("n3", ""),
            self._ctx("n4", "kept"),
        ]
        assert [c.note_id for c in clamp_contexts(contexts)] == ["n4"]

    def test_history_keeps_latest_turns_cut_short(self):
        history = [ChatMessage(role="user", content=str(i) * 10) for i in range(5)]
        out = clamp_history(history, max_messages=2, max_chars=4)
        assert [m.content for m in out] == ["3333", "4444"]

    def test_history_can_be_disabled(self):
        assert clamp_history([ChatMessage(role="user", content="hi")], max_messages=0) == []
        assert clamp_history(None) == []
