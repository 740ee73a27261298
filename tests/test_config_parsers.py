"""Tests for configuration loading, file parsers and adapter factories."""

import json
import tempfile
from pathlib import Path

import pytest
import yaml

from ake.config import DEFAULT_CONFIG, load_config, section
from ake.embeddings.embedder import HashEmbedder, get_embedder
from ake.ingest.parsers import JsonParser, MarkdownParser, TextParser, UnsupportedFileType, get_parser
from ake.llm.base import get_llm, parse_memory_candidates
from ake.llm.mock import MockLlm
from ake.storage.objects import LocalObjectStorage


def test_load_config_merges_file_and_env(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    monkeypatch.setenv("AKE_STORAGE_BACKEND", "chromadb")
    monkeypatch.delenv("AKE_DB_PATH", raising=False)
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "config.yaml"
        path.write_text(yaml.dump({"retrieval": {"chunk_k": 3}, "db_path": f"{tmpdir}/x.db"}))
        cfg = load_config(path)

    assert cfg["claude_api_key"] == "sk-test"
    assert cfg["storage_backend"] == "chromadb"
    assert cfg["retrieval"]["chunk_k"] == 3
    assert cfg["retrieval"]["memory_k"] == DEFAULT_CONFIG["retrieval"]["memory_k"]
    assert Path(cfg["db_path"]).is_absolute()
    assert DEFAULT_CONFIG["retrieval"]["chunk_k"] == 6


def test_section_falls_back_to_defaults():
    assert section({}, "chunking", "file") == {"chunk_size_tokens": 1000, "overlap_tokens": 150}
    assert section({"reflection": {"every": 5}}, "reflection")["merge_threshold"] == 0.93


def test_markdown_frontmatter():
    parsed = MarkdownParser().parse("---\ntitle: Trip\ntags: [travel]\n---\nWe went north.", "trip.md")
    assert parsed["title"] == "Trip"
    assert parsed["content"] == "We went north."
    assert parsed["metadata"]["tags"] == ["travel"]


def test_markdown_title_from_heading_or_name():
    assert MarkdownParser().parse("# Heading\nbody", "x.md")["title"] == "Heading"
    assert MarkdownParser().parse("body only", "notes.md")["title"] == "notes"


def test_json_chat_exports():
    claude = [{"name": "Chat", "chat_messages": [
        {"sender": "human", "text": "hi"},
        {"sender": "assistant", "content": [{"type": "text", "text": "hello"}]},
    ]}]
    parsed = JsonParser().parse(json.dumps(claude), "export.json")
    assert parsed["metadata"]["platform"] == "claude"
    assert "**human**: hi" in parsed["content"]
    assert "**assistant**: hello" in parsed["content"]

    chatgpt = {"title": "GPT chat", "mapping": {
        "b": {"message": {"author": {"role": "assistant"}, "content": {"parts": ["second"]}, "create_time": 2}},
        "a": {"message": {"author": {"role": "user"}, "content": {"parts": ["first"]}, "create_time": 1}},
    }}
    parsed = JsonParser().parse(json.dumps(chatgpt), "gpt.json")
    assert parsed["title"] == "GPT chat"
    assert parsed["content"].index("first") < parsed["content"].index("second")


def test_get_parser():
    assert isinstance(get_parser("a.md"), MarkdownParser)
    assert isinstance(get_parser("a.json"), JsonParser)
    assert isinstance(get_parser("data.csv"), TextParser)
    assert isinstance(get_parser("blob", "application/json"), JsonParser)
    assert isinstance(get_parser("unknown.xyz"), TextParser)
    with pytest.raises(UnsupportedFileType):
        get_parser("report.pdf")
    with pytest.raises(UnsupportedFileType):
        get_parser("upload", "application/vnd.openxmlformats-officedocument.wordprocessingml.document")


def test_object_storage_roundtrip_and_escape(tmp_path):
    storage = LocalObjectStorage(tmp_path)
    storage.put_object("alice/k/a.txt", b"data", "text/plain")
    stored = storage.get_object("alice/k/a.txt")
    assert stored.data == b"data"
    assert stored.content_type == "text/plain"
    with pytest.raises(ValueError):
        storage.put_object("../outside.txt", b"x")
    storage.delete_object("alice/k/a.txt")
    with pytest.raises(FileNotFoundError):
        storage.get_object("alice/k/a.txt")


async def test_hash_embedder_is_deterministic_and_normalised():
    embedder = HashEmbedder(dimension=64)
    a, b, c = await embedder.embed(["green tea", "green tea", ""])
    assert a == b
    assert sum(x * x for x in a) == pytest.approx(1.0)
    assert not any(c)
    assert len(await embedder.embed_query("tea")) == 64


def test_embedder_factory():
    assert isinstance(get_embedder({"embedding_provider": "hash"}), HashEmbedder)
    with pytest.raises(ValueError):
        get_embedder({"embedding_provider": "word2vec"})


def test_llm_factory_falls_back_without_key(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    assert isinstance(get_llm({}), MockLlm)


def test_memory_candidates_drop_malformed_entries():
    raw = 'Here you go:\n```json\n' + json.dumps([
        {"type": "fact", "content": "Speaks Catalan", "confidence": "0.7"},
        {"type": "fact", "content": 42},
        {"type": "rumour", "content": "x"},
        {"type": "person", "content": "Sister is Ana", "shouldUpdateId": "m1"},
    ]) + "\n```"
    candidates = parse_memory_candidates(raw)
    assert [c.content for c in candidates] == ["Speaks Catalan", "Sister is Ana"]
    assert candidates[0].confidence == 0.7
    assert candidates[1].should_update_id == "m1"
    assert parse_memory_candidates("nothing") == []
