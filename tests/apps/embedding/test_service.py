"""Tests for apps/embedding/service.py — ingest, query and tenant isolation.

嵌入服务层测试：写入、检索、租户隔离、错误分类。

Run with: pytest tests/apps/embedding/test_service.py -v
"""

from __future__ import annotations

import math
from datetime import timedelta

import pytest

pytestmark = pytest.mark.integration


def unit(index: int, dimension: int = 8) -> list[float]:
    vec = [0.0] * dimension
    vec[index] = 1.0
    return vec


# 与 unit(0) 的余弦相似度分别为 1.0 / 0.707 / 0.577 / 0.0
RANKED_VECTORS = {
    "alpha": unit(0),
    "beta": [1.0, 1.0, 0, 0, 0, 0, 0, 0],
    "gamma": [1.0, 0, 1.0, 1.0, 0, 0, 0, 0],
    "delta": unit(1),
}


class TestIngestAndQuery:
    """Ingest followed by similarity query.

    写入后检索的基本行为。
    """

    @pytest.mark.asyncio
    async def test_identical_text_ranks_first(self, service, db_session):
        """Querying with the ingested text returns it first with similarity ~1.0.

        用写入时的原文检索，应排在第一且相似度接近 1。
        """
        record = await service.ingest(db_session, "u1", "refund policy", {"type": "faq"})
        await service.ingest(db_session, "u1", "pricing page", {"type": "doc"})

        matches = await service.query(db_session, "u1", query_text="refund policy", limit=1)

        assert len(matches) == 1
        assert matches[0].record.id == record.id
        assert matches[0].similarity >= 0.99

    @pytest.mark.asyncio
    async def test_ingest_assigns_id_and_timestamps(self, service, db_session):
        """Verify the stored record fields.

        验证写入记录的字段。
        """
        record = await service.ingest(db_session, "u1", "  hello world  ", {"lang": "en"})

        assert record.id is not None
        assert record.owner_id == "u1"
        assert record.content == "hello world"
        assert record.metadata_ == {"lang": "en"}
        assert record.created_at is not None
        assert record.updated_at is not None
        assert len(record.embedding) == 8

    @pytest.mark.asyncio
    async def test_ingest_does_not_deduplicate(self, service, db_session):
        """Every ingest produces a new record.

        重复写入相同内容不会去重。
        """
        await service.ingest(db_session, "u1", "same text")
        await service.ingest(db_session, "u1", "same text")

        assert await service.count(db_session, "u1") == 2

    @pytest.mark.asyncio
    async def test_refund_policy_scenario(self, service, db_session):
        """FAQ filter with threshold 0.5 returns exactly the refund record.

        按 type=faq 过滤，只返回退款政策记录。
        """
        refund = await service.ingest(db_session, "u1", "refund policy", {"type": "faq"})
        await service.ingest(db_session, "u1", "pricing page", {"type": "doc"})

        matches = await service.query(
            db_session,
            "u1",
            query_text="refund policy",
            filter={"type": "faq"},
            threshold=0.5,
            limit=5,
        )

        assert [m.record.id for m in matches] == [refund.id]
        assert matches[0].similarity >= 0.99

    @pytest.mark.asyncio
    async def test_no_match_returns_empty_list(self, service, db_session):
        """An empty store yields an empty result, not an error.

        无匹配时返回空列表。
        """
        assert await service.query(db_session, "u1", query_text="anything") == []

    @pytest.mark.asyncio
    async def test_query_by_vector(self, make_service, db_session):
        """A precomputed query vector skips the provider.

        直接使用查询向量时不调用提供商。
        """
        service = make_service(vectors=RANKED_VECTORS)
        for text in RANKED_VECTORS:
            await service.ingest(db_session, "u1", text)
        calls_before = len(service.provider.calls)

        matches = await service.query(db_session, "u1", query_vector=unit(0), threshold=0.9)

        assert [m.record.content for m in matches] == ["alpha"]
        assert len(service.provider.calls) == calls_before


class TestRanking:
    """Threshold, ordering and limit rules.

    阈值、排序与数量上限规则。
    """

    @pytest.mark.asyncio
    async def test_threshold_and_order(self, make_service, db_session):
        """Only similarity > threshold is kept, most similar first.

        只保留相似度大于阈值的结果，按相似度降序。
        """
        service = make_service(vectors=RANKED_VECTORS)
        for text in RANKED_VECTORS:
            await service.ingest(db_session, "u1", text)

        matches = await service.query(
            db_session, "u1", query_vector=unit(0), threshold=0.5, limit=10,
        )

        assert [m.record.content for m in matches] == ["alpha", "beta", "gamma"]
        assert all(m.similarity > 0.5 for m in matches)
        assert math.isclose(matches[1].similarity, 1 / math.sqrt(2), rel_tol=1e-6)

    @pytest.mark.asyncio
    async def test_limit_truncates(self, make_service, db_session):
        """At most ``limit`` results are returned.

        返回结果数量不超过 limit。
        """
        service = make_service(vectors=RANKED_VECTORS)
        for text in RANKED_VECTORS:
            await service.ingest(db_session, "u1", text)

        matches = await service.query(
            db_session, "u1", query_vector=unit(0), threshold=-1.0, limit=2,
        )

        assert [m.record.content for m in matches] == ["alpha", "beta"]

    @pytest.mark.asyncio
    async def test_threshold_is_exclusive(self, make_service, db_session):
        """A similarity equal to the threshold is excluded.

        相似度等于阈值时不返回。
        """
        service = make_service(vectors=RANKED_VECTORS)
        await service.ingest(db_session, "u1", "alpha")

        matches = await service.query(db_session, "u1", query_vector=unit(0), threshold=1.0)

        assert matches == []

    @pytest.mark.asyncio
    async def test_ties_break_by_newest(self, make_service, db_session):
        """Equal similarity is ordered by most recent creation.

        相似度相同时，创建时间较新的排在前面。
        """
        service = make_service(vectors={"old": unit(0), "new": unit(0)})
        old = await service.ingest(db_session, "u1", "old")
        old.created_at = old.created_at - timedelta(hours=1)
        await db_session.flush()
        new = await service.ingest(db_session, "u1", "new")

        matches = await service.query(db_session, "u1", query_vector=unit(0), threshold=0.5)

        assert [m.record.id for m in matches] == [new.id, old.id]

    @pytest.mark.asyncio
    async def test_nested_metadata_filter(self, make_service, db_session):
        """Nested filters are matched key by key.

        嵌套元数据按键逐层匹配。
        """
        service = make_service(vectors={"en": unit(0), "fr": unit(0)})
        await service.ingest(db_session, "u1", "en", {"tags": {"lang": "en", "tier": 1}})
        await service.ingest(db_session, "u1", "fr", {"tags": {"lang": "fr"}})

        matches = await service.query(
            db_session, "u1", query_vector=unit(0), filter={"tags": {"lang": "en"}},
        )

        assert [m.record.content for m in matches] == ["en"]

    @pytest.mark.asyncio
    async def test_array_filter_requires_equal_value(self, make_service, db_session):
        """Array values in a filter match by equality, not by subset.

        过滤条件中的数组按相等匹配，而不是子集包含。
        """
        service = make_service(vectors={"both": unit(0), "only-a": unit(0)})
        await service.ingest(db_session, "u1", "both", {"tags": ["a", "b"]})
        await service.ingest(db_session, "u1", "only-a", {"tags": ["a"]})

        matches = await service.query(
            db_session, "u1", query_vector=unit(0), filter={"tags": ["a"]},
        )

        assert [m.record.content for m in matches] == ["only-a"]

    @pytest.mark.asyncio
    async def test_equal_timestamps_break_by_id(self, make_service, db_session):
        """Same similarity and created_at: the higher id comes first.

        相似度与创建时间都相同时，id 较大的排在前面。
        """
        service = make_service(vectors={"first": unit(0), "second": unit(0)})
        first = await service.ingest(db_session, "u1", "first")
        second = await service.ingest(db_session, "u1", "second")
        second.created_at = first.created_at
        await db_session.flush()

        matches = await service.query(db_session, "u1", query_vector=unit(0), threshold=0.5)

        assert [m.record.id for m in matches] == [second.id, first.id]


class TestTenantIsolation:
    """Records are only visible to their owner.

    租户隔离：记录只对所属租户可见。
    """

    @pytest.mark.asyncio
    async def test_other_owner_sees_nothing(self, service, db_session):
        """u2 querying u1's content gets an empty list.

        u2 检索 u1 的内容应返回空列表。
        """
        await service.ingest(db_session, "u1", "refund policy", {"type": "faq"})

        matches = await service.query(
            db_session, "u2", query_text="refund policy", threshold=-1.0, limit=100,
        )

        assert matches == []

    @pytest.mark.asyncio
    async def test_padded_owner_is_not_merged(self, service, db_session):
        """An owner id with surrounding whitespace is never folded into another tenant.

        带首尾空白的 owner_id 被拒绝，不会与 "u1" 合并。
        """
        from apps.embedding.exceptions import ValidationError

        with pytest.raises(ValidationError):
            await service.ingest(db_session, "u1 ", "secret note")

        matches = await service.query(
            db_session, "u1", query_text="secret note", threshold=-1.0, limit=100,
        )

        assert matches == []
        assert await service.count(db_session) == 0

    @pytest.mark.asyncio
    async def test_query_only_returns_own_records(self, make_service, db_session):
        """Mixed owners: each owner only sees its own records.

        多租户数据混合时，只返回当前租户的记录。
        """
        service = make_service(vectors={"a": unit(0), "b": unit(0)})
        await service.ingest(db_session, "u1", "a")
        await service.ingest(db_session, "u2", "b")

        matches = await service.query(db_session, "u1", query_vector=unit(0), threshold=-1.0)

        assert {m.record.owner_id for m in matches} == {"u1"}

    @pytest.mark.asyncio
    async def test_unscoped_query_spans_owners(self, make_service, db_session):
        """The administrative query sees every owner.

        管理查询跨越所有租户。
        """
        service = make_service(vectors={"a": unit(0), "b": unit(0)})
        await service.ingest(db_session, "u1", "a")
        await service.ingest(db_session, "u2", "b")

        matches = await service.query_unscoped(db_session, query_vector=unit(0), threshold=0.5)

        assert {m.record.owner_id for m in matches} == {"u1", "u2"}

    @pytest.mark.asyncio
    async def test_get_record_of_other_owner_is_not_found(self, service, db_session):
        """Another owner's record behaves as missing.

        读取其他租户的记录返回 not_found。
        """
        from apps.embedding.exceptions import RecordNotFoundError

        record = await service.ingest(db_session, "u1", "secret")

        with pytest.raises(RecordNotFoundError):
            await service.get_record(db_session, "u2", record.id)


class TestErrors:
    """Error taxonomy and atomicity.

    错误分类与写入原子性。
    """

    @pytest.mark.asyncio
    async def test_wrong_dimension_is_rejected(self, make_service, db_session):
        """Provider vectors of the wrong size are rejected and nothing is stored.

        维度不匹配时拒绝写入，记录数不变。
        """
        from apps.embedding.exceptions import DimensionMismatchError

        service = make_service(dimension=4)

        with pytest.raises(DimensionMismatchError) as exc_info:
            await service.ingest(db_session, "u1", "hello")

        assert exc_info.value.expected == 8
        assert exc_info.value.actual == 4
        assert await service.count(db_session) == 0

    @pytest.mark.asyncio
    async def test_wrong_query_vector_dimension(self, service, db_session):
        """Verify query vectors are dimension checked.

        查询向量维度错误时报错。
        """
        from apps.embedding.exceptions import DimensionMismatchError

        with pytest.raises(DimensionMismatchError):
            await service.query(db_session, "u1", query_vector=[1.0, 0.0])

    @pytest.mark.asyncio
    async def test_provider_failure_maps_to_provider_error(self, make_service, db_session):
        """Unexpected provider exceptions surface as ProviderError.

        提供商异常映射为 ProviderError，且不写入记录。
        """
        from apps.embedding.exceptions import ProviderError

        service = make_service(fail_with=RuntimeError("quota exceeded"))

        with pytest.raises(ProviderError):
            await service.ingest(db_session, "u1", "hello")

        assert await service.count(db_session) == 0

    @pytest.mark.asyncio
    async def test_timeout_leaves_no_record(self, make_service, db_session):
        """Exceeding the timeout raises EmbeddingTimeoutError without a partial write.

        超时抛出 EmbeddingTimeoutError，且不残留记录。
        """
        from apps.embedding.exceptions import EmbeddingTimeoutError

        service = make_service(delay=0.5)

        with pytest.raises(EmbeddingTimeoutError):
            await service.ingest(db_session, "u1", "slow", timeout=0.05)

        assert await service.count(db_session) == 0

    def test_timeout_error_is_a_timeout(self):
        """Callers can catch the builtin TimeoutError.

        EmbeddingTimeoutError 同时是内置 TimeoutError。
        """
        from apps.embedding.exceptions import EmbeddingTimeoutError

        assert issubclass(EmbeddingTimeoutError, TimeoutError)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("owner_id", ["", "   ", None, "x" * 129, "u1 ", " u1"])
    async def test_invalid_owner(self, service, db_session, owner_id):
        """Missing, blank or oversized owner ids are rejected.

        owner_id 为空或过长时报 ValidationError。
        """
        from apps.embedding.exceptions import ValidationError

        with pytest.raises(ValidationError):
            await service.ingest(db_session, owner_id, "hello")

    @pytest.mark.asyncio
    async def test_oversized_content(self, service, db_session):
        """Content over the configured maximum is rejected before the provider.

        超长内容在调用提供商之前即被拒绝。
        """
        from apps.embedding.exceptions import ValidationError
        from settings import settings

        with pytest.raises(ValidationError):
            await service.ingest(db_session, "u1", "x" * (settings.embedding_max_content_length + 1))

        assert service.provider.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"query_text": "a", "limit": 0},
            {"query_text": "a", "limit": 10_000},
            {"query_text": "a", "threshold": 1.5},
            {"query_text": "a", "query_vector": [0.0] * 8},
            {},
            {"query_text": "a", "filter": ["type"]},
        ],
    )
    async def test_invalid_query_arguments(self, service, db_session, kwargs):
        """Verify query argument validation.

        非法的 limit / threshold / 查询组合报 ValidationError。
        """
        from apps.embedding.exceptions import ValidationError

        with pytest.raises(ValidationError):
            await service.query(db_session, "u1", **kwargs)


class TestReplaceByType:
    """Typed replacement of an owner's records.

    按类型替换租户记录。
    """

    @pytest.mark.asyncio
    async def test_replaces_only_same_type_and_owner(self, service, db_session):
        """Old records of the type are removed; other types and owners remain.

        只删除当前租户同类型的记录。
        """
        await service.replace_by_type(db_session, "u1", "persona v1", "persona")
        await service.ingest(db_session, "u1", "faq entry", {"embedding_type": "faq"})
        await service.replace_by_type(db_session, "u2", "other persona", "persona")

        latest = await service.replace_by_type(
            db_session, "u1", "persona v2", "persona", {"source": "upload"},
        )

        assert latest.metadata_ == {"source": "upload", "embedding_type": "persona"}
        assert await service.count(db_session, "u1") == 2
        assert await service.count(db_session, "u2") == 1
        contents = {r.content for r in await service.text_search(db_session, "u1", "persona")}
        assert contents == {"persona v2"}

    @pytest.mark.asyncio
    async def test_provider_failure_keeps_existing(self, service, make_service, db_session):
        """A failed replacement does not delete anything.

        替换失败时原记录保持不变。
        """
        from apps.embedding.exceptions import ProviderError

        await service.replace_by_type(db_session, "u1", "persona v1", "persona")
        failing = make_service(fail_with=RuntimeError("down"))

        with pytest.raises(ProviderError):
            await failing.replace_by_type(db_session, "u1", "persona v2", "persona")

        assert await service.count(db_session, "u1") == 1


class TestRecordLifecycle:
    """Update, delete and tenant cascade.

    记录的更新、删除与租户级联删除。
    """

    @pytest.mark.asyncio
    async def test_update_content_reembeds(self, service, db_session):
        """Changing content replaces the vector and advances updated_at.

        修改内容会重新编码并推进 updated_at。
        """
        record = await service.ingest(db_session, "u1", "first draft")
        before = record.updated_at

        updated = await service.update_record(db_session, "u1", record.id, content="final text")

        assert updated.content == "final text"
        assert updated.updated_at > before
        matches = await service.query(db_session, "u1", query_text="final text", limit=1)
        assert matches[0].record.id == record.id
        assert matches[0].similarity >= 0.99

    @pytest.mark.asyncio
    async def test_update_metadata_only(self, service, db_session):
        """Metadata is replaced without calling the provider.

        只修改元数据时不调用提供商。
        """
        record = await service.ingest(db_session, "u1", "doc", {"type": "doc"})
        calls_before = len(service.provider.calls)

        updated = await service.update_record(db_session, "u1", record.id, metadata={"type": "faq"})

        assert updated.metadata_ == {"type": "faq"}
        assert len(service.provider.calls) == calls_before

    @pytest.mark.asyncio
    async def test_update_requires_changes(self, service, db_session):
        """Verify an empty update is rejected.

        没有任何修改内容时报错。
        """
        from apps.embedding.exceptions import ValidationError

        record = await service.ingest(db_session, "u1", "doc")

        with pytest.raises(ValidationError):
            await service.update_record(db_session, "u1", record.id)

    @pytest.mark.asyncio
    async def test_delete_record(self, service, db_session):
        """Deleted records are gone; other owners cannot delete them.

        删除后不可再读取；其他租户无法删除。
        """
        from apps.embedding.exceptions import RecordNotFoundError

        record = await service.ingest(db_session, "u1", "doc")

        with pytest.raises(RecordNotFoundError):
            await service.delete_record(db_session, "u2", record.id)
        assert await service.count(db_session, "u1") == 1

        await service.delete_record(db_session, "u1", record.id)
        with pytest.raises(RecordNotFoundError):
            await service.get_record(db_session, "u1", record.id)

    @pytest.mark.asyncio
    async def test_delete_owner(self, service, db_session):
        """Tenant removal deletes every record of that tenant only.

        删除租户只影响该租户的记录。
        """
        await service.ingest(db_session, "u1", "one")
        await service.ingest(db_session, "u1", "two")
        await service.ingest(db_session, "u2", "three")

        removed = await service.delete_owner(db_session, "u1")

        assert removed == 2
        assert await service.count(db_session, "u1") == 0
        assert await service.count(db_session, "u2") == 1
        assert await service.delete_owner(db_session, "u1") == 0


class TestTextSearchAndStats:
    """Text search fallback, generation and statistics.

    文本检索、嵌入生成与统计信息。
    """

    @pytest.mark.asyncio
    async def test_text_search_case_insensitive_and_escaped(self, service, db_session):
        """Wildcards in the query are literal; matching ignores case.

        查询中的通配符按字面匹配，且不区分大小写。
        """
        await service.ingest(db_session, "u1", "100% Refund guaranteed")
        await service.ingest(db_session, "u1", "100 refunds issued")
        await service.ingest(db_session, "u2", "100% refund elsewhere")

        records = await service.text_search(db_session, "u1", "100% REFUND")

        assert [r.content for r in records] == ["100% Refund guaranteed"]

    @pytest.mark.asyncio
    async def test_text_search_newest_first(self, service, db_session):
        """Verify newest-first ordering.

        按创建顺序倒序返回。
        """
        first = await service.ingest(db_session, "u1", "order one")
        second = await service.ingest(db_session, "u1", "order two")

        records = await service.text_search(db_session, "u1", "order")

        assert [r.id for r in records] == [second.id, first.id]

    @pytest.mark.asyncio
    async def test_embed_text(self, service):
        """Generation returns a vector of the collection dimension.

        生成的向量维度等于集合维度。
        """
        vector = await service.embed_text("hello")

        assert len(vector) == 8
        assert vector == await service.embed_text("hello")

    @pytest.mark.asyncio
    async def test_stats(self, service, db_session):
        """Verify statistics payload.

        验证统计信息字段。
        """
        await service.ingest(db_session, "u1", "one")
        await service.ingest(db_session, "u2", "two")

        stats = await service.get_stats(db_session)

        assert stats["total_embeddings"] == 2
        assert stats["total_owners"] == 2
        assert stats["provider"] == "stub"
        assert stats["dimension"] == 8
        assert stats["backend"] == "sqlite"
        assert stats["index_name"] == "ix_user_embeddings_embedding_ivfflat"
