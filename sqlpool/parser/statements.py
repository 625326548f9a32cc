"""
Statement classification and parsing of DDL, DML and administrative SQL
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..core import (Column, TableDefinition, DistributionStrategy, StorageOrganization,
                    PartitionSpec, RangeSide)
from ..errors import SqlSyntaxError
from .text import (MaskedSql, find_matching_paren, split_top_level, split_object_name,
                   strip_identifier, parse_value)
from .query_parser import prepare_text


class StatementKind(Enum):
    SELECT = "SELECT"
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CREATE_TABLE = "CREATE TABLE"
    CREATE_TABLE_AS_SELECT = "CREATE TABLE AS SELECT"
    DROP_TABLE = "DROP TABLE"
    TRUNCATE_TABLE = "TRUNCATE TABLE"
    REBUILD_INDEX = "ALTER INDEX REBUILD"
    CREATE_WORKLOAD_GROUP = "CREATE WORKLOAD GROUP"
    DROP_WORKLOAD_GROUP = "DROP WORKLOAD GROUP"
    CREATE_WORKLOAD_CLASSIFIER = "CREATE WORKLOAD CLASSIFIER"
    DROP_WORKLOAD_CLASSIFIER = "DROP WORKLOAD CLASSIFIER"
    SET_DATABASE_CACHING = "ALTER DATABASE SET RESULT_SET_CACHING"
    SET_SESSION_CACHING = "SET RESULT_SET_CACHING"
    DROP_RESULT_CACHE = "DBCC DROPRESULTSETCACHE"
    SHOW_RESULT_CACHE_SPACE = "DBCC SHOWRESULTCACHESPACEUSED"
    SHOW_SPACE_USED = "DBCC PDW_SHOWSPACEUSED"
    KILL = "KILL"
    SET_SESSION_CONTEXT = "sp_set_session_context"
    ADD_ROLE_MEMBER = "sp_addrolemember"
    DROP_ROLE_MEMBER = "sp_droprolemember"


# Statements executed directly by the control node, outside admission
ADMIN_KINDS = frozenset({
    StatementKind.CREATE_WORKLOAD_GROUP, StatementKind.DROP_WORKLOAD_GROUP,
    StatementKind.CREATE_WORKLOAD_CLASSIFIER, StatementKind.DROP_WORKLOAD_CLASSIFIER,
    StatementKind.SET_DATABASE_CACHING, StatementKind.SET_SESSION_CACHING,
    StatementKind.DROP_RESULT_CACHE, StatementKind.SHOW_RESULT_CACHE_SPACE,
    StatementKind.SHOW_SPACE_USED, StatementKind.KILL, StatementKind.SET_SESSION_CONTEXT,
    StatementKind.ADD_ROLE_MEMBER, StatementKind.DROP_ROLE_MEMBER,
})

WRITE_KINDS = frozenset({
    StatementKind.INSERT, StatementKind.UPDATE, StatementKind.DELETE,
    StatementKind.TRUNCATE_TABLE,
})

DDL_KINDS = frozenset({
    StatementKind.CREATE_TABLE, StatementKind.CREATE_TABLE_AS_SELECT,
    StatementKind.DROP_TABLE, StatementKind.REBUILD_INDEX,
})


@dataclass
class Statement:
    """
    A parsed statement

    Attributes:
        kind: Statement kind
        sql: Original text
        target: Object the statement acts on (table, group, classifier,
            database, request id, role)
        options: WITH (...) options or statement arguments, keys upper-cased
        definition: Table definition for CREATE TABLE / CTAS
        body: Executable text with T-SQL surface rewrites applied (the SELECT
            of a query, INSERT ... SELECT or CTAS; the full statement for
            UPDATE / DELETE; the VALUES list of an INSERT)
        columns: INSERT column list
        label: OPTION (LABEL = '...') value
    """
    kind: StatementKind
    sql: str
    target: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)
    definition: Optional[TableDefinition] = None
    body: Optional[str] = None
    columns: Optional[List[str]] = None
    label: Optional[str] = None

    @property
    def bypasses_admission(self) -> bool:
        return self.kind in ADMIN_KINDS

    @property
    def is_query(self) -> bool:
        return self.kind is StatementKind.SELECT

    @property
    def inserts_from_values(self) -> bool:
        return self.kind is StatementKind.INSERT and bool(
            self.body and re.match(r'\s*VALUES\b', self.body, re.IGNORECASE))


_NAME = r'((?:"[^"]+"|\w+)(?:\s*\.\s*(?:"[^"]+"|\w+))*)'


def _object(token: str) -> str:
    return split_object_name(token)[1]


def parse_options(text: str, masked: MaskedSql) -> Dict[str, Any]:
    """
    KEY = value, KEY = value ... -> {'KEY': value}

    Raises:
        SqlSyntaxError: An item is not a KEY = value pair
    """
    options = {}
    for item in split_top_level(text):
        if not item:
            continue
        match = re.fullmatch(r'(\w+)\s*=\s*(.+)', item.strip(), re.DOTALL)
        if not match:
            raise SqlSyntaxError(f"Incorrect syntax near '{masked.unmask(item)}'")
        options[match.group(1).upper()] = parse_value(match.group(2), masked)
    return options


def _parse_column(item: str) -> Column:
    match = re.fullmatch(r'("[^"]+"|\w+)\s+(\w+(?:\s*\([^)]*\))?)(.*)', item.strip(),
                         re.DOTALL | re.IGNORECASE)
    if not match:
        raise SqlSyntaxError(f"Invalid column definition '{item.strip()}'")
    rest = match.group(3).upper()
    return Column(
        name=strip_identifier(match.group(1)),
        data_type=re.sub(r'\s+', '', match.group(2)).upper(),
        nullable=not re.search(r'\bNOT\s+NULL\b', rest),
    )


def _parse_table_options(text: str, masked: MaskedSql):
    distribution = DistributionStrategy.round_robin()
    storage = StorageOrganization.clustered_columnstore()
    partition = None
    for item in split_top_level(text):
        upper = item.upper()
        match = re.fullmatch(r'DISTRIBUTION\s*=\s*(.+)', item, re.IGNORECASE | re.DOTALL)
        if match:
            value = match.group(1).strip()
            hashed = re.fullmatch(r'HASH\s*\(\s*("[^"]+"|\w+)\s*\)', value, re.IGNORECASE)
            if hashed:
                distribution = DistributionStrategy.hash(strip_identifier(hashed.group(1)))
            elif value.upper() == 'ROUND_ROBIN':
                distribution = DistributionStrategy.round_robin()
            elif value.upper() == 'REPLICATE':
                distribution = DistributionStrategy.replicate()
            else:
                raise SqlSyntaxError(f"Unknown distribution '{value}'")
        elif upper == 'HEAP':
            storage = StorageOrganization.heap()
        elif re.fullmatch(r'CLUSTERED\s+COLUMNSTORE\s+INDEX', upper):
            storage = StorageOrganization.clustered_columnstore()
        elif re.match(r'CLUSTERED\s+INDEX\s*\(', upper):
            open_idx = item.index('(')
            keys = item[open_idx + 1:find_matching_paren(item, open_idx)]
            columns = [strip_identifier(re.sub(r'\s+(?:ASC|DESC)$', '', key.strip(), flags=re.IGNORECASE))
                       for key in split_top_level(keys)]
            storage = StorageOrganization.clustered_index(*columns)
        elif upper.startswith('PARTITION'):
            match = re.fullmatch(
                r'PARTITION\s*\(\s*("[^"]+"|\w+)\s+RANGE\s+(?:(LEFT|RIGHT)\s+)?FOR\s+VALUES\s*\((.*)\)\s*\)',
                item, re.IGNORECASE | re.DOTALL)
            if not match:
                raise SqlSyntaxError(f"Invalid partition clause '{masked.unmask(item)}'")
            side = RangeSide((match.group(2) or 'LEFT').upper())
            boundaries = tuple(parse_value(v, masked) for v in split_top_level(match.group(3)) if v)
            partition = PartitionSpec(strip_identifier(match.group(1)), boundaries, side)
        elif item:
            raise SqlSyntaxError(f"Unsupported table option '{masked.unmask(item)}'")
    return distribution, storage, partition


def _parse_create_table(text: str, masked: MaskedSql, sql: str) -> Statement:
    match = re.match(r'CREATE\s+TABLE\s+' + _NAME + r'\s*', text, re.IGNORECASE)
    name = _object(match.group(1))
    rest = text[match.end():]

    columns: List[Column] = []
    if rest.startswith('('):
        close = find_matching_paren(rest, 0)
        columns = [_parse_column(item) for item in split_top_level(rest[1:close]) if item]
        rest = rest[close + 1:].strip()

    distribution = DistributionStrategy.round_robin()
    storage = StorageOrganization.clustered_columnstore()
    partition = None
    with_match = re.match(r'WITH\s*\(', rest, re.IGNORECASE)
    if with_match:
        open_idx = with_match.end() - 1
        close = find_matching_paren(rest, open_idx)
        distribution, storage, partition = _parse_table_options(rest[open_idx + 1:close], masked)
        rest = rest[close + 1:].strip()

    definition = TableDefinition(name, columns, distribution, storage, partition)
    as_match = re.match(r'AS\s+(SELECT\b.*|WITH\b.*)$', rest, re.IGNORECASE | re.DOTALL)
    if as_match:
        return Statement(StatementKind.CREATE_TABLE_AS_SELECT, sql, target=name,
                         definition=definition, body=masked.unmask(as_match.group(1)))
    if rest:
        raise SqlSyntaxError(f"Incorrect syntax near '{masked.unmask(rest)[:40]}'")
    if not columns:
        raise SqlSyntaxError(f"CREATE TABLE '{name}' needs a column list or AS SELECT")
    return Statement(StatementKind.CREATE_TABLE, sql, target=name, definition=definition)


def _parse_insert(text: str, masked: MaskedSql, sql: str) -> Statement:
    match = re.match(r'INSERT\s+(?:INTO\s+)?' + _NAME + r'\s*', text, re.IGNORECASE)
    name = _object(match.group(1))
    rest = text[match.end():]
    columns = None
    if rest.startswith('('):
        close = find_matching_paren(rest, 0)
        columns = [strip_identifier(c) for c in split_top_level(rest[1:close])]
        rest = rest[close + 1:].strip()
    if not re.match(r'(?:VALUES|SELECT|WITH)\b', rest, re.IGNORECASE):
        raise SqlSyntaxError(f"INSERT into '{name}' needs VALUES or SELECT")
    return Statement(StatementKind.INSERT, sql, target=name, columns=columns,
                     body=masked.unmask(rest))


def _parse_session_context(args: str, masked: MaskedSql) -> Dict[str, Any]:
    named = dict(re.findall(r'@(\w+)\s*=\s*(__lit\d+__|NULL|[\w.]+)', args, re.IGNORECASE))
    if named:
        named = {k.lower(): v for k, v in named.items()}
        key, value = named.get('key'), named.get('value')
    else:
        parts = split_top_level(args)
        if len(parts) < 2:
            raise SqlSyntaxError("sp_set_session_context needs @key and @value")
        key, value = parts[0], parts[1]
    if key is None:
        raise SqlSyntaxError("sp_set_session_context needs @key")
    return {'KEY': parse_value(key, masked),
            'VALUE': parse_value(value, masked) if value is not None else None}


def parse_statement(sql: str) -> Statement:
    """
    Parse one statement

    Args:
        sql: Statement text

    Returns:
        Statement

    Raises:
        SqlSyntaxError: Statement is empty or not supported
    """
    masked, label = prepare_text(sql)
    text = masked.text
    if not text:
        raise SqlSyntaxError("Empty statement")

    def statement(kind: StatementKind, **kwargs) -> Statement:
        return Statement(kind, sql, label=label, **kwargs)

    if re.match(r'(?:SELECT|WITH)\b', text, re.IGNORECASE):
        return statement(StatementKind.SELECT, body=masked.unmask())

    patterns: List[Tuple[str, Any]] = [
        (r'CREATE\s+WORKLOAD\s+GROUP\s+' + _NAME + r'\s+WITH\s*\((.*)\)',
         lambda m: statement(StatementKind.CREATE_WORKLOAD_GROUP, target=_object(m.group(1)),
                             options=parse_options(m.group(2), masked))),
        (r'DROP\s+WORKLOAD\s+GROUP\s+' + _NAME,
         lambda m: statement(StatementKind.DROP_WORKLOAD_GROUP, target=_object(m.group(1)))),
        (r'CREATE\s+WORKLOAD\s+CLASSIFIER\s+' + _NAME + r'\s+WITH\s*\((.*)\)',
         lambda m: statement(StatementKind.CREATE_WORKLOAD_CLASSIFIER, target=_object(m.group(1)),
                             options=parse_options(m.group(2), masked))),
        (r'DROP\s+WORKLOAD\s+CLASSIFIER\s+' + _NAME,
         lambda m: statement(StatementKind.DROP_WORKLOAD_CLASSIFIER, target=_object(m.group(1)))),
        (r'ALTER\s+DATABASE\s+' + _NAME + r'\s+SET\s+RESULT_SET_CACHING\s+(ON|OFF)',
         lambda m: statement(StatementKind.SET_DATABASE_CACHING, target=_object(m.group(1)),
                             options={'ENABLED': m.group(2).upper() == 'ON'})),
        (r'SET\s+RESULT_SET_CACHING\s+(ON|OFF)',
         lambda m: statement(StatementKind.SET_SESSION_CACHING,
                             options={'ENABLED': m.group(1).upper() == 'ON'})),
        (r'DBCC\s+DROPRESULTSETCACHE',
         lambda m: statement(StatementKind.DROP_RESULT_CACHE)),
        (r'DBCC\s+SHOWRESULTCACHESPACEUSED(?:\s*\(\s*\))?',
         lambda m: statement(StatementKind.SHOW_RESULT_CACHE_SPACE)),
        (r'DBCC\s+PDW_SHOWSPACEUSED\s*\(\s*(__lit\d+__|' + _NAME[1:-1] + r')\s*\)',
         lambda m: statement(StatementKind.SHOW_SPACE_USED,
                             target=_object(masked.literal(m.group(1)) or m.group(1)))),
        (r'KILL\s+(__lit\d+__|\w+)',
         lambda m: statement(StatementKind.KILL, target=str(parse_value(m.group(1), masked)))),
        (r'EXEC(?:UTE)?\s+(?:sys\s*\.\s*)?sp_set_session_context\s+(.*)',
         lambda m: statement(StatementKind.SET_SESSION_CONTEXT,
                             options=_parse_session_context(m.group(1), masked))),
        (r'EXEC(?:UTE)?\s+(?:sys\s*\.\s*)?sp_(add|drop)rolemember\s+(__lit\d+__|\w+)\s*,\s*(__lit\d+__|\w+)',
         lambda m: statement(StatementKind.ADD_ROLE_MEMBER if m.group(1).lower() == 'add'
                             else StatementKind.DROP_ROLE_MEMBER,
                             target=str(parse_value(m.group(2), masked)),
                             options={'MEMBER': str(parse_value(m.group(3), masked))})),
        (r'DROP\s+TABLE\s+(IF\s+EXISTS\s+)?' + _NAME,
         lambda m: statement(StatementKind.DROP_TABLE, target=_object(m.group(2)),
                             options={'IF_EXISTS': bool(m.group(1))})),
        (r'TRUNCATE\s+TABLE\s+' + _NAME,
         lambda m: statement(StatementKind.TRUNCATE_TABLE, target=_object(m.group(1)))),
        (r'ALTER\s+INDEX\s+ALL\s+ON\s+' + _NAME + r'\s+REBUILD(?:\s+.*)?',
         lambda m: statement(StatementKind.REBUILD_INDEX, target=_object(m.group(1)))),
        (r'UPDATE\s+' + _NAME + r'\s+SET\b.*',
         lambda m: statement(StatementKind.UPDATE, target=_object(m.group(1)),
                             body=masked.unmask())),
        (r'DELETE\s+(?:FROM\s+)?' + _NAME + r'(?:\s+WHERE\b.*)?',
         lambda m: statement(StatementKind.DELETE, target=_object(m.group(1)),
                             body=masked.unmask())),
    ]
    for pattern, build in patterns:
        match = re.fullmatch(pattern, text, re.IGNORECASE | re.DOTALL)
        if match:
            return build(match)

    try:
        if re.match(r'CREATE\s+TABLE\b', text, re.IGNORECASE):
            parsed = _parse_create_table(text, masked, sql)
            parsed.label = label
            return parsed
        if re.match(r'INSERT\b', text, re.IGNORECASE):
            parsed = _parse_insert(text, masked, sql)
            parsed.label = label
            return parsed
    except ValueError as e:
        raise SqlSyntaxError(f"Incorrect syntax: {e}") from e

    raise SqlSyntaxError(f"Incorrect syntax near '{text.split()[0]}'")
