"""Tests for per-model sqlite-vec virtual tables."""

from __future__ import annotations

import pytest

from notesync.db.vectors import (
    chunk_map_table_name,
    ensure_vec_table,
    list_vec_tables,
    model_to_slug,
    vec_table_name,
)


@pytest.mark.parametrize("model,expected", [
    ("openai/text-embedding-3-small", "openai_text_embedding_3_small"),
    ("openai/text-embedding-3-large", "openai_text_embedding_3_large"),
    ("cohere/embed-english-v3.0", "cohere_embed_english_v3_0"),
    ("local/all-MiniLM-L6-v2", "local_all_minilm_l6_v2"),
])
def test_model_to_slug(model, expected):
    assert model_to_slug(model) == expected


def test_table_names():
    slug = model_to_slug("openai/text-embedding-3-small")
    assert vec_table_name(slug) == "vec_chunks_openai_text_embedding_3_small"
    assert chunk_map_table_name(slug) == "chunk_map_openai_text_embedding_3_small"


def test_ensure_vec_table_creates_vec_and_map(tmp_db):
    table = ensure_vec_table(tmp_db, "test_model", dimensions=4)
    assert table == "vec_chunks_test_model"
    names = {
        r[0] for r in tmp_db.execute("SELECT name FROM sqlite_master WHERE type='table'")
    }
    assert "vec_chunks_test_model" in names
    assert "chunk_map_test_model" in names


def test_ensure_vec_table_idempotent(tmp_db):
    assert ensure_vec_table(tmp_db, "test_model", 4) == ensure_vec_table(tmp_db, "test_model", 4)


def test_cosine_distance(tmp_db):
    table = ensure_vec_table(tmp_db, "test_model", dimensions=2)
    tmp_db.execute(f"INSERT INTO {table}(rowid, embedding) VALUES (1, '[1.0, 0.0]')")
    tmp_db.execute(f"INSERT INTO {table}(rowid, embedding) VALUES (2, '[0.0, 1.0]')")
    rows = tmp_db.execute(
        f"SELECT rowid, distance FROM {table} WHERE embedding MATCH ? AND k = 2 "
        "ORDER BY distance",
        ("[2.0, 0.0]",),
    ).fetchall()
    assert rows[0][0] == 1
    assert rows[0][1] == pytest.approx(0.0, abs=1e-6)
    assert rows[1][1] == pytest.approx(1.0, abs=1e-6)


def test_list_vec_tables(tmp_db):
    ensure_vec_table(tmp_db, "model_a", 4)
    ensure_vec_table(tmp_db, "model_b", 4)
    assert sorted(list_vec_tables(tmp_db)) == ["vec_chunks_model_a", "vec_chunks_model_b"]


def test_ensure_vec_table_invalid_slug(tmp_db):
    with pytest.raises(ValueError, match="model_slug"):
        ensure_vec_table(tmp_db, "invalid/slug!", dimensions=128)


def test_ensure_vec_table_invalid_dimensions(tmp_db):
    with pytest.raises(ValueError, match="dimensions"):
        ensure_vec_table(tmp_db, "test_model", dimensions=0)
