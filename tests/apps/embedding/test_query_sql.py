"""Tests for the PostgreSQL ranking statement built in apps/embedding/service.py.

PostgreSQL 检索语句的编译测试（不需要数据库）。
"""

from __future__ import annotations

import re

import pytest
from sqlalchemy.dialects import postgresql

DIMENSION = 8


def _compile(stmt):
    compiled = stmt.compile(dialect=postgresql.dialect())
    return str(compiled), list(compiled.params.values())


def _vector() -> list[float]:
    return [1.0] + [0.0] * (DIMENSION - 1)


class TestPgvectorQuery:
    """Verify the pushed-down ranking statement.

    验证下推到 pgvector 的排序语句。
    """

    def test_scoped_statement(self):
        from apps.embedding.service import build_pgvector_query

        sql, params = _compile(build_pgvector_query("u1", _vector(), None, 0.7, 7))

        assert "user_embeddings.owner_id = %(" in sql
        assert "u1" in params
        assert "<=>" in sql
        # 阈值比较是严格大于
        assert " > %(" in sql
        assert ">=" not in sql
        assert 0.7 in params
        assert re.search(
            r"ORDER BY .*<=>.*ASC, user_embeddings\.created_at DESC, user_embeddings\.id DESC",
            sql,
            re.S,
        )
        assert "LIMIT %(" in sql
        assert 7 in params

    def test_owner_is_never_inlined(self):
        from apps.embedding.service import build_pgvector_query

        sql, _ = _compile(build_pgvector_query("tenant'; drop", _vector(), None, 0.5, 5))

        assert "tenant'; drop" not in sql

    def test_unscoped_statement_has_no_owner_predicate(self):
        from apps.embedding.service import build_pgvector_query

        sql, _ = _compile(build_pgvector_query(None, _vector(), None, 0.5, 5))

        assert "owner_id =" not in sql
        assert "<=>" in sql

    def test_filter_uses_per_key_equality(self):
        """Array values compare by equality, matching the in-memory rule.

        数组值按相等比较，与内存排序路径的规则一致。
        """
        from apps.embedding.service import build_pgvector_query

        sql, params = _compile(build_pgvector_query("u1", _vector(), {"tags": ["a"]}, 0.5, 5))

        assert "@>" not in sql
        assert "user_embeddings.metadata -> %(" in sql
        assert "tags" in params
        assert ["a"] in params

    def test_nested_filter_descends_into_objects(self):
        from apps.embedding.service import build_pgvector_query

        sql, params = _compile(
            build_pgvector_query("u1", _vector(), {"tags": {"lang": "en"}}, 0.5, 5)
        )

        assert sql.count("->") >= 2
        assert "lang" in params
        assert "en" in params

    def test_empty_nested_filter_requires_object(self):
        from apps.embedding.service import build_pgvector_query

        sql, _ = _compile(build_pgvector_query("u1", _vector(), {"tags": {}}, 0.5, 5))

        assert "jsonb_typeof" in sql

    @pytest.mark.parametrize(
        "metadata,filter,expected",
        [
            ({"tags": ["a", "b"]}, {"tags": ["a"]}, False),
            ({"tags": ["a", "b"]}, {"tags": ["a", "b"]}, True),
            ({"tags": {"lang": "en"}}, {"tags": {}}, True),
            ({"tags": "en"}, {"tags": {}}, False),
        ],
    )
    def test_in_memory_rule(self, metadata, filter, expected):
        from apps.embedding.similarity import metadata_contains

        assert metadata_contains(metadata, filter) is expected
