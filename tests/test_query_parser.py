from decimal import Decimal

import pytest

from sqlpool.parser import QueryParser, ColumnRef


parser = QueryParser()


def test_tables_and_aliases():
    parsed = parser.parse_query(
        "SELECT f.amount FROM dbo.FactSales AS f JOIN [DimRegion] r ON f.region_id = r.region_id")
    assert [(t.name, t.alias) for t in parsed.tables] == [('FactSales', 'f'), ('DimRegion', 'r')]
    assert parsed.user_tables == ['factsales', 'dimregion']
    assert len(parsed.joins) == 1
    join = parsed.joins[0]
    assert (join.left, join.right) == (ColumnRef('region_id', 'f'), ColumnRef('region_id', 'r'))
    assert parsed.resolve(join.right).name == 'DimRegion'


def join_pairs(sql):
    return [(j.left.qualifier, j.left.column, j.right.qualifier, j.right.column)
            for j in parser.parse_query(sql).joins]


def test_join_equalities_from_where_and_on():
    assert join_pairs("SELECT * FROM a, b WHERE a.k = b.k AND a.z = 1") == [('a', 'k', 'b', 'k')]
    assert join_pairs("SELECT * FROM a JOIN b ON (a.k = b.k) AND a.z BETWEEN 1 AND 5 "
                      "JOIN c ON c.x = b.x") == [('a', 'k', 'b', 'k'), ('c', 'x', 'b', 'x')]


@pytest.mark.parametrize('sql', [
    "SELECT * FROM a, b WHERE a.k = b.k OR a.z = 1",
    "SELECT * FROM a JOIN b ON a.k = b.k OR b.z = 2",
    "SELECT * FROM a JOIN b ON a.k = b.k + 1",
    "SELECT * FROM a JOIN b ON a.k * 2 = b.k",
    "SELECT CASE WHEN a.x = b.y THEN 1 ELSE 0 END AS same FROM a, b",
    "SELECT * FROM a, b WHERE CASE WHEN a.z = 1 AND a.x = b.y AND b.z = 2 THEN 1 END = 1",
    "SELECT * FROM a, b WHERE NOT a.k = b.k",
])
def test_equalities_that_do_not_constrain_the_join(sql):
    assert join_pairs(sql) == []


def test_system_views():
    parsed = parser.parse_query("SELECT * FROM sys.dm_pdw_exec_requests WHERE status = 'Running'")
    assert parsed.references_system_objects
    assert parsed.user_tables == []
    assert parsed.tables[0].key == 'sys.dm_pdw_exec_requests'


def test_group_by_and_aggregate():
    parsed = parser.parse_query("SELECT region_id, SUM(amount) FROM FactSales GROUP BY region_id")
    assert parsed.has_aggregate
    assert parsed.group_by == [ColumnRef('region_id')]
    assert parsed.group_by_resolvable
    ordinal = parser.parse_query("SELECT region_id, COUNT(*) FROM FactSales GROUP BY 1")
    assert not ordinal.group_by_resolvable


def test_predicates():
    parsed = parser.parse_query(
        "SELECT * FROM FactSales WHERE sale_year >= 2023 AND region_id IN (1, 2) "
        "AND amount BETWEEN 1.5 AND 10 AND customer_id <> 3")
    found = {(p.column.column, p.op): p.values for p in parsed.predicates}
    assert found == {
        ('sale_year', '>='): (2023,),
        ('region_id', 'IN'): (1, 2),
        ('amount', 'BETWEEN'): (Decimal('1.5'), 10),
    }


def test_or_disables_predicates():
    parsed = parser.parse_query("SELECT * FROM t WHERE a = 1 OR b = 2")
    assert parsed.has_or
    assert parsed.predicates == []


def test_string_predicate_value():
    parsed = parser.parse_query("SELECT * FROM t WHERE name = 'O''Brien'")
    assert parsed.predicates[0].values == ("O'Brien",)
    assert "'O''Brien'" in parsed.executable_sql


def test_top_rewritten_to_limit():
    parsed = parser.parse_query("SELECT TOP 10 * FROM t ORDER BY a")
    assert parsed.has_limit and parsed.has_order_by
    assert parsed.executable_sql.endswith('LIMIT 10')
    assert 'TOP' not in parsed.executable_sql


def test_feature_flags():
    assert parser.parse_query("SELECT * FROM a LEFT JOIN b ON a.x = b.x").has_outer_join
    assert parser.parse_query("SELECT * FROM a WHERE x IN (SELECT x FROM b)").has_subquery
    assert parser.parse_query("SELECT DISTINCT x FROM a").has_distinct
    assert parser.parse_query("SELECT x FROM a UNION SELECT x FROM b").has_set_operation
    assert parser.parse_query("SELECT ROW_NUMBER() OVER (ORDER BY x) FROM a").has_window
    assert parser.parse_query("SELECT * FROM a x JOIN a y ON x.id = y.id").has_self_join


def test_nested_from_tables_found():
    parsed = parser.parse_query("SELECT * FROM a WHERE x IN (SELECT x FROM b)")
    assert parsed.user_tables == ['a', 'b']


def test_cte_names_are_not_tables():
    parsed = parser.parse_query("WITH recent AS (SELECT * FROM FactSales) SELECT * FROM recent")
    assert parsed.user_tables == ['factsales']


def test_determinism():
    assert not parser.parse_query("SELECT GETDATE(), a FROM t").is_deterministic
    assert not parser.parse_query("SELECT NEWID() FROM t").is_deterministic
    assert parser.parse_query("SELECT a FROM t").is_deterministic


def test_fingerprint_normalization():
    a = parser.parse_query("SELECT a FROM t   WHERE b = 1 -- comment")
    b = parser.parse_query("SELECT a\nFROM t WHERE b = 1")
    c = parser.parse_query("SELECT a FROM t WHERE b = 2")
    labelled = parser.parse_query("SELECT a FROM t WHERE b = 1 OPTION (LABEL = 'x')")
    assert a.fingerprint == b.fingerprint == labelled.fingerprint
    assert a.fingerprint != c.fingerprint
    assert labelled.label == 'x'


def test_literals_distinguish_fingerprints():
    a = parser.parse_query("SELECT * FROM t WHERE s = 'x'")
    b = parser.parse_query("SELECT * FROM t WHERE s = 'y'")
    assert a.fingerprint != b.fingerprint
