"""
Tests for the embedded SQLite adapter.

Tests cover:
- Opening, closing and read-only access
- Common-dialect execution and row decoding
- Error classification
- FTS5 search ranking and sanitisation
"""

import logging

import pytest

from euregs.database.adapter import BackendKind
from euregs.database.sqlite_adapter import SqliteAdapter
from euregs.database.statement import Eq, NullsLast, OrderBy, Select, dedupe_leading
from euregs.errors import (
    BackendUnavailable,
    DialectUnsupported,
    QueryFailed,
    SchemaError,
)
from euregs.models.regulation import Article, Regulation, SearchTarget


@pytest.mark.asyncio
async def test_missing_file_is_unavailable(tmp_path):
    adapter = SqliteAdapter(str(tmp_path / "missing.db"))
    with pytest.raises(BackendUnavailable):
        await adapter.connect()


@pytest.mark.asyncio
async def test_execute_before_connect_is_unavailable(db_path):
    adapter = SqliteAdapter(str(db_path))
    with pytest.raises(BackendUnavailable):
        await adapter.execute("SELECT 1")


@pytest.mark.asyncio
async def test_close_is_idempotent(db_path):
    adapter = SqliteAdapter(str(db_path))
    await adapter.close()
    await adapter.connect()
    await adapter.close()
    await adapter.close()
    assert adapter.is_open is False


@pytest.mark.asyncio
async def test_context_manager_opens_and_closes(db_path):
    async with SqliteAdapter(str(db_path)) as adapter:
        assert adapter.kind == BackendKind.SQLITE
        assert await adapter.ping() is True
    assert await adapter.ping() is False


@pytest.mark.asyncio
async def test_common_dialect_statement_runs(adapter):
    result = await adapter.execute(
        "SELECT id, full_name, celex_id FROM regulations WHERE id = $1",
        ["GDPR"],
        row_model=Regulation,
    )
    assert result.row_count == 1
    assert isinstance(result.rows[0], Regulation)
    assert result.rows[0].celex_id == "32016R0679"


@pytest.mark.asyncio
async def test_ilike_and_cast_translation(adapter):
    result = await adapter.execute(
        "SELECT term, article::INTEGER AS article_no FROM definitions WHERE term ILIKE $1",
        ["%PERSONAL%"],
    )
    assert result.rows == [{"term": "personal data", "article_no": 4}]


@pytest.mark.asyncio
async def test_distinct_on_columns_are_reported(adapter):
    result = await adapter.execute(
        "SELECT DISTINCT ON (regulation) regulation, confidence FROM applicability_rules "
        "WHERE sector = $1 ORDER BY regulation",
        ["financial"],
    )
    assert result.distinct_on == ("regulation",)
    assert result.row_count > len({row["regulation"] for row in result.rows})


@pytest.mark.asyncio
async def test_placeholder_count_must_match_parameters(adapter):
    with pytest.raises(DialectUnsupported):
        await adapter.execute("SELECT * FROM regulations WHERE id = $1", [])


@pytest.mark.asyncio
async def test_write_statements_rejected_before_backend(adapter):
    with pytest.raises(DialectUnsupported):
        await adapter.execute("DELETE FROM regulations")


@pytest.mark.asyncio
async def test_missing_table_is_schema_error(adapter):
    with pytest.raises(SchemaError):
        await adapter.execute("SELECT * FROM no_such_table")


@pytest.mark.asyncio
async def test_other_failures_are_query_failed(adapter):
    with pytest.raises(QueryFailed) as exc_info:
        await adapter.execute("SELECT * FROM regulations WHERE")
    assert exc_info.value.backend_message


@pytest.mark.asyncio
async def test_row_model_mismatch_is_schema_error(adapter):
    with pytest.raises(SchemaError):
        await adapter.execute("SELECT id FROM regulations", row_model=Article)


@pytest.mark.asyncio
async def test_select_renders_natively(adapter):
    result = await adapter.execute(Select(
        table="articles",
        columns=("regulation", "article_number", "title", "text", "chapter", "recitals", "cross_references"),
        where=(Eq("regulation", "GDPR"), Eq("article_number", "32")),
        row_model=Article,
    ))
    article = result.rows[0]
    assert article.title == "Security of processing"
    assert article.recitals == ["83"]


@pytest.mark.asyncio
async def test_failures_are_logged_with_redacted_params(adapter, caplog):
    caplog.set_level(logging.ERROR, logger="euregs.database.adapter")
    with pytest.raises(SchemaError):
        await adapter.execute("SELECT * FROM no_such_table WHERE secret = $1", ["hunter2"])
    assert "<str len=7>" in caplog.text
    assert "hunter2" not in caplog.text


@pytest.mark.asyncio
async def test_database_is_read_only(adapter):
    with pytest.raises(QueryFailed):
        await adapter._fetch_rows("DELETE FROM regulations", ())


class TestSearch:
    @pytest.mark.asyncio
    async def test_articles_ranked_most_relevant_first(self, adapter):
        results = await adapter.search(SearchTarget.ARTICLES, "personal data breach")
        assert results
        relevances = [r.relevance for r in results]
        assert relevances == sorted(relevances, reverse=True)
        assert results[0].item.article_number == "33"

    @pytest.mark.asyncio
    async def test_bm25_score_is_negated_into_relevance(self, adapter):
        results = await adapter.search(SearchTarget.ARTICLES, "encryption")
        assert all(r.score < 0 for r in results)
        assert all(r.relevance == -r.score for r in results)

    @pytest.mark.asyncio
    async def test_snippets_are_highlighted(self, adapter):
        results = await adapter.search(SearchTarget.ARTICLES, "encryption")
        assert ">>>encryption<<<" in results[0].snippet

    @pytest.mark.asyncio
    async def test_regulation_filter(self, adapter):
        results = await adapter.search(SearchTarget.ARTICLES, "incident", ["NIS2"])
        assert {r.item.regulation for r in results} == {"NIS2"}

    @pytest.mark.asyncio
    async def test_limit(self, adapter):
        results = await adapter.search(SearchTarget.ARTICLES, "shall", limit=2)
        assert len(results) == 2

    @pytest.mark.asyncio
    async def test_recitals(self, adapter):
        results = await adapter.search(SearchTarget.RECITALS, "encryption")
        assert [(r.item.regulation, r.item.recital_number) for r in results] == [("GDPR", 83)]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query", ["", "***", "'-\"(){}[]^~*:", "a of"])
    async def test_queries_that_sanitise_to_nothing_return_empty(self, adapter, query):
        assert await adapter.search(SearchTarget.ARTICLES, query) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query", [
        "security \"processing\" (risk) [x] {y} ^z ~w *v :u",
        "NOT AND OR NEAR",
        "ICT-related incident -- major",
        "data:subject rights*",
        "incident reporting competent authority notification",
    ])
    async def test_hostile_queries_never_raise(self, adapter, query):
        results = await adapter.search(SearchTarget.ARTICLES, query)
        assert isinstance(results, list)


@pytest.mark.asyncio
async def test_distinct_on_with_limit_keeps_distinct_keys(adapter):
    result = await adapter.execute(Select(
        table="applicability_rules",
        columns=("regulation", "subsector"),
        where=(Eq("sector", "financial"),),
        order_by=(OrderBy("regulation"), NullsLast("subsector")),
        distinct_on=("regulation",),
        limit=2,
    ))
    assert result.limit == 2
    rows = dedupe_leading(result.rows, result.distinct_on, result.limit)
    assert [row["regulation"] for row in rows] == ["DORA", "GDPR"]
