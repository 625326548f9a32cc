"""
Query Parser for extracting the structure the planner and cache need

Regex-based: no full SQL grammar, only the features that decide where a
query can run (tables, join equalities, GROUP BY columns, sargable WHERE
predicates) and whether its result may be cached.
"""

import hashlib
import re
from dataclasses import dataclass, field
from typing import List, Optional, Set, Tuple

from .text import (LITERAL_TOKEN, MaskedSql, mask_sql, brackets_to_quotes, flatten_parentheses,
                   split_top_level, split_conjuncts, strip_outer_parentheses,
                   split_object_name, parse_value)

SYSTEM_SCHEMAS = ('sys', 'information_schema')

_CLAUSE_END = re.compile(
    r'\b(?:WHERE|GROUP\s+BY|ORDER\s+BY|HAVING|LIMIT|OFFSET|UNION|EXCEPT|INTERSECT|'
    r'WINDOW|QUALIFY|FETCH)\b', re.IGNORECASE)
_JOIN_SPLIT = re.compile(
    r',|\b(?:(?:INNER|CROSS|LEFT|RIGHT|FULL)\s+(?:OUTER\s+)?)?JOIN\b|\b(?:CROSS|OUTER)\s+APPLY\b',
    re.IGNORECASE)
_KEYWORDS = {'WHERE', 'GROUP', 'ORDER', 'HAVING', 'LIMIT', 'ON', 'JOIN', 'INNER', 'LEFT',
             'RIGHT', 'FULL', 'CROSS', 'OUTER', 'WITH', 'UNION', 'USING', 'OPTION',
             'TABLESAMPLE', 'AS'}
_AGGREGATES = re.compile(
    r'\b(?:COUNT|COUNT_BIG|SUM|AVG|MIN|MAX|STDEV|STDEVP|VAR|VARP|STRING_AGG|LIST|'
    r'MEDIAN|ANY_VALUE|APPROX_COUNT_DISTINCT|ARRAY_AGG|GROUPING)\s*\(', re.IGNORECASE)
_NON_DETERMINISTIC = re.compile(
    r'\b(?:GETDATE|GETUTCDATE|SYSDATETIME|SYSUTCDATETIME|SYSDATETIMEOFFSET|'
    r'CURRENT_TIMESTAMP|CURRENT_DATE|CURRENT_TIME|NOW|NEWID|RAND|RANDOM|UUID|'
    r'GEN_RANDOM_UUID)\b', re.IGNORECASE)

_VALUE = r'(__lit\d+__|[+-]?\d+(?:\.\d+)?)'
_COLUMN = r'(?<![\w."])(?:"?(\w+)"?\.)?"?(\w+)"?'
_COMPARISON = re.compile(_COLUMN + r'\s*(<=|>=|<>|!=|=|<|>)\s*' + _VALUE + r'(?![\w.])')
_BETWEEN = re.compile(_COLUMN + r'\s+BETWEEN\s+' + _VALUE + r'\s+AND\s+' + _VALUE + r'(?![\w.])',
                      re.IGNORECASE)
_IN_LIST = re.compile(_COLUMN + r'\s+IN\s*\(\s*((?:' + _VALUE + r'\s*,\s*)*' + _VALUE + r')\s*\)',
                      re.IGNORECASE)
_JOIN_EQUALITY = re.compile(r'"?(\w+)"?\."?(\w+)"?\s*=\s*"?(\w+)"?\."?(\w+)"?')


@dataclass(frozen=True)
class TableReference:
    """A table named in a FROM / JOIN clause"""
    name: str
    alias: Optional[str] = None
    schema: Optional[str] = None

    @property
    def is_system(self) -> bool:
        return (self.schema or '').lower() in SYSTEM_SCHEMAS

    @property
    def key(self) -> str:
        if self.is_system:
            return f"{self.schema.lower()}.{self.name.lower()}"
        return self.name.lower()

    def answers_to(self, qualifier: str) -> bool:
        qualifier = qualifier.lower()
        return qualifier == (self.alias or '').lower() or qualifier == self.name.lower()


@dataclass(frozen=True)
class ColumnRef:
    column: str
    qualifier: Optional[str] = None


@dataclass(frozen=True)
class JoinCondition:
    left: ColumnRef
    right: ColumnRef


@dataclass(frozen=True)
class Predicate:
    """
    Sargable WHERE predicate with raw (untyped) values

    Attributes:
        column: Column reference
        op: '=', '<', '<=', '>', '>=', 'BETWEEN' or 'IN'
        values: Literal values as parsed from the text
    """
    column: ColumnRef
    op: str
    values: Tuple


@dataclass
class ParsedQuery:
    """
    Parsed query representation

    Attributes:
        sql: Original statement text
        executable_sql: Text the engine runs (label option removed, TOP
            rewritten to LIMIT, [] quoting and dbo. prefixes normalized)
        normalized_text: Comment-free, whitespace-collapsed text
        fingerprint: sha256 of normalized_text
        tables: Tables referenced in FROM / JOIN clauses (CTEs excluded)
        joins: Equality conditions between two qualified columns
        group_by: Outer GROUP BY columns
        group_by_resolvable: False when a GROUP BY item is not a plain column
        predicates: ANDed sargable predicates of the outer WHERE clause
        label: Value of OPTION (LABEL = '...')
    """
    sql: str
    executable_sql: str
    normalized_text: str
    fingerprint: str
    tables: List[TableReference] = field(default_factory=list)
    joins: List[JoinCondition] = field(default_factory=list)
    group_by: List[ColumnRef] = field(default_factory=list)
    group_by_resolvable: bool = True
    predicates: List[Predicate] = field(default_factory=list)
    label: Optional[str] = None
    has_aggregate: bool = False
    has_subquery: bool = False
    has_outer_join: bool = False
    has_order_by: bool = False
    has_limit: bool = False
    has_distinct: bool = False
    has_window: bool = False
    has_set_operation: bool = False
    has_or: bool = False
    is_deterministic: bool = True

    @property
    def num_tables(self) -> int:
        return len(self.tables)

    @property
    def num_joins(self) -> int:
        return len(self.joins)

    @property
    def references_system_objects(self) -> bool:
        return any(t.is_system for t in self.tables)

    @property
    def user_tables(self) -> List[str]:
        """Distinct user table keys in order of first reference"""
        seen = []
        for table in self.tables:
            if not table.is_system and table.key not in seen:
                seen.append(table.key)
        return seen

    @property
    def has_self_join(self) -> bool:
        keys = [t.key for t in self.tables]
        return len(keys) != len(set(keys))

    def resolve(self, ref: ColumnRef) -> Optional[TableReference]:
        """Table a qualified column reference belongs to"""
        if ref.qualifier is None:
            return None
        for table in self.tables:
            if table.answers_to(ref.qualifier):
                return table
        return None


def prepare_text(sql: str) -> Tuple[MaskedSql, Optional[str]]:
    """
    Mask literals and apply the T-SQL surface rewrites

    Returns:
        (masked statement, label)
    """
    masked = mask_sql(sql)
    text = brackets_to_quotes(masked.text)

    label = None
    option = re.search(r'\bOPTION\s*\(([^()]*)\)', text, re.IGNORECASE)
    if option:
        label_match = re.search(r'\bLABEL\s*=\s*(__lit\d+__)', option.group(1), re.IGNORECASE)
        if label_match:
            label = masked.literal(label_match.group(1))
        text = text[:option.start()] + text[option.end():]

    text = re.sub(r'(?<![\w."])"?dbo"?\s*\.\s*', '', text, flags=re.IGNORECASE)
    text = text.strip().rstrip(';').strip()
    return MaskedSql(text, masked.literals), label


class QueryParser:
    """
    SQL Query Parser

    Extracts the features used for distributed planning and result-set
    caching. Unknown constructs make the parser conservative (the planner
    falls back to control-node execution; partition elimination is off).

    Usage:
        parser = QueryParser()
        parsed = parser.parse_query(sql)
        print(parsed.user_tables, parsed.group_by)
    """

    def parse_query(self, sql: str) -> ParsedQuery:
        """
        Parse a SELECT statement

        Args:
            sql: SQL query string

        Returns:
            ParsedQuery with extracted features
        """
        masked, label = prepare_text(sql)
        text, has_top = self._rewrite_top(masked.text)
        masked = MaskedSql(text, masked.literals)
        flat = flatten_parentheses(text)

        normalized = ' '.join(text.split())
        # Literals still referenced by the text (the label literal is gone)
        used = [masked.literals[int(n)] for n in LITERAL_TOKEN.findall(text)]
        if used:
            normalized += '\x1f' + '\x1f'.join(used)

        cte_names = self._cte_names(text)
        has_subquery = len(re.findall(r'\bSELECT\b', text, re.IGNORECASE)) > 1 or bool(cte_names)

        where_text = self._clause(text, flat, r'\bWHERE\b')
        has_or = bool(re.search(r'\bOR\b', where_text, re.IGNORECASE))
        predicates: List[Predicate] = []
        if where_text and not has_subquery and not has_or \
                and not re.search(r'\bNOT\b', where_text, re.IGNORECASE):
            predicates = self._extract_predicates(where_text, masked)

        group_by, resolvable = self._extract_group_by(text, flat)

        return ParsedQuery(
            sql=sql,
            executable_sql=masked.unmask(),
            normalized_text=normalized,
            fingerprint=hashlib.sha256(normalized.encode('utf-8')).hexdigest(),
            tables=self._extract_tables(text, cte_names),
            joins=self._extract_joins(text, flat, where_text),
            group_by=group_by,
            group_by_resolvable=resolvable,
            predicates=predicates,
            label=label,
            has_aggregate=bool(_AGGREGATES.search(text)),
            has_subquery=has_subquery,
            has_outer_join=bool(re.search(
                r'\b(?:LEFT|RIGHT|FULL)\s+(?:OUTER\s+)?JOIN\b|\bAPPLY\b', text, re.IGNORECASE)),
            has_order_by=bool(re.search(r'\bORDER\s+BY\b', text, re.IGNORECASE)),
            has_limit=has_top or bool(re.search(
                r'\bLIMIT\b|\bOFFSET\b|\bFETCH\s+(?:NEXT|FIRST)\b', text, re.IGNORECASE)),
            has_distinct=bool(re.search(r'\bDISTINCT\b', text, re.IGNORECASE)),
            has_window=bool(re.search(r'\bOVER\s*\(', text, re.IGNORECASE)),
            has_set_operation=bool(re.search(r'\b(?:UNION|EXCEPT|INTERSECT)\b', text, re.IGNORECASE)),
            has_or=has_or,
            is_deterministic=not _NON_DETERMINISTIC.search(text),
        )

    def _rewrite_top(self, text: str) -> Tuple[str, bool]:
        """SELECT [DISTINCT] TOP (n) ... -> SELECT [DISTINCT] ... LIMIT n"""
        match = re.match(r'\s*SELECT\s+(DISTINCT\s+)?TOP\s*\(?\s*(\d+)\s*\)?\s+', text, re.IGNORECASE)
        if not match:
            return text, False
        head = 'SELECT ' + (match.group(1) or '')
        return f"{head}{text[match.end():]} LIMIT {match.group(2)}", True

    def _cte_names(self, text: str) -> Set[str]:
        if not re.match(r'\s*WITH\b', text, re.IGNORECASE):
            return set()
        flat = flatten_parentheses(text)
        names = re.findall(r'(?:\bWITH\b|,)\s*"?(\w+)"?\s*(?:\(\s*\)\s*)?AS\s*\(', flat, re.IGNORECASE)
        return {name.lower() for name in names}

    def _clause(self, text: str, flat: str, start_pattern: str) -> str:
        """Outer clause body from the start keyword up to the next clause keyword"""
        match = re.search(start_pattern, flat, re.IGNORECASE)
        if not match:
            return ''
        end = _CLAUSE_END.search(flat, match.end())
        while end and end.group(0).upper() == 'WHERE':
            end = _CLAUSE_END.search(flat, end.end())
        stop = end.start() if end else len(text)
        return text[match.end():stop]

    def _extract_tables(self, text: str, cte_names: Set[str]) -> List[TableReference]:
        """
        Collect table references from every FROM clause, nested ones included

        Args:
            text: Masked statement
            cte_names: Common table expression names (not tables)

        Returns:
            Table references in textual order
        """
        tables = []
        for match in re.finditer(r'\bFROM\b', text, re.IGNORECASE):
            body = self._from_body(text, match.end())
            flat = flatten_parentheses(body)
            for item in _JOIN_SPLIT.split(flat):
                item = re.split(r'\bON\b|\bUSING\b', item, maxsplit=1, flags=re.IGNORECASE)[0].strip()
                if not item or item.startswith('('):
                    continue
                tokens = item.split()
                name_token = tokens[0]
                if '(' in name_token:
                    continue
                schema, name = split_object_name(name_token)
                if name.lower() in cte_names and schema is None:
                    continue
                alias = None
                rest = [t for t in tokens[1:] if t.upper() != 'AS']
                if rest and rest[0].upper() not in _KEYWORDS and not rest[0].startswith('('):
                    alias = rest[0].strip('"')
                tables.append(TableReference(name=name, alias=alias, schema=schema))
        return tables

    def _from_body(self, text: str, start: int) -> str:
        """FROM clause body ending at a clause keyword or an unmatched ')'"""
        depth = 0
        idx = start
        while idx < len(text):
            ch = text[idx]
            if ch == '(':
                depth += 1
            elif ch == ')':
                if depth == 0:
                    break
                depth -= 1
            elif depth == 0 and (idx == 0 or not (text[idx - 1].isalnum() or text[idx - 1] == '_')):
                if _CLAUSE_END.match(text, idx) or re.match(r'SELECT\b', text[idx:idx + 7], re.IGNORECASE):
                    break
            idx += 1
        return text[start:idx]

    def _extract_joins(self, text: str, flat: str, where_text: str) -> List[JoinCondition]:
        """
        Equalities every result row must satisfy

        Only the top-level AND conjuncts of the outer ON and WHERE clauses
        count, and only when the conjunct is exactly `x.a = y.b`. Anything
        under OR, CASE or an arithmetic expression does not constrain the
        join and is left to the engine.
        """
        conditions = [where_text]
        match = re.search(r'\bFROM\b', flat, re.IGNORECASE)
        if match:
            body = self._from_body(text, match.end())
            flat_body = flatten_parentheses(body)
            separators = list(_JOIN_SPLIT.finditer(flat_body))
            starts = [0] + [m.end() for m in separators]
            ends = [m.start() for m in separators] + [len(body)]
            for start, end in zip(starts, ends):
                on = re.search(r'\bON\b', flat_body[start:end], re.IGNORECASE)
                if on:
                    conditions.append(body[start + on.end():end])

        joins = []
        for condition in conditions:
            for conjunct in split_conjuncts(condition):
                equality = _JOIN_EQUALITY.fullmatch(strip_outer_parentheses(conjunct))
                if equality is None:
                    continue
                left_q, left_c, right_q, right_c = equality.groups()
                if left_q.lower() == right_q.lower() or left_q[0].isdigit() or right_q[0].isdigit():
                    continue
                joins.append(JoinCondition(ColumnRef(left_c, left_q), ColumnRef(right_c, right_q)))
        return joins

    def _extract_group_by(self, text: str, flat: str) -> Tuple[List[ColumnRef], bool]:
        body = self._clause(text, flat, r'\bGROUP\s+BY\b')
        if not body.strip():
            return [], True
        if re.search(r'\b(?:ROLLUP|CUBE|GROUPING\s+SETS)\b', body, re.IGNORECASE):
            return [], False
        columns = []
        resolvable = True
        for item in split_top_level(body):
            match = re.fullmatch(r'(?:"?(\w+)"?\.)?"?(\w+)"?', item.strip())
            if not match or match.group(2).isdigit():
                resolvable = False
                continue
            columns.append(ColumnRef(match.group(2), match.group(1)))
        return columns, resolvable

    def _extract_predicates(self, where_text: str, masked: MaskedSql) -> List[Predicate]:
        predicates = []
        consumed = []

        def ref(qualifier, column):
            return ColumnRef(column, qualifier)

        def usable(match) -> bool:
            column = match.group(2)
            if column.startswith('__lit') or column[0].isdigit() or column.upper() in _KEYWORDS:
                return False
            before = where_text[:match.start()].rstrip()
            after = where_text[match.end():].lstrip()
            return (not before or before.endswith('(') or re.search(r'\bAND$', before, re.IGNORECASE)) \
                and (not after or after.startswith(')') or re.match(r'AND\b', after, re.IGNORECASE))

        for match in _BETWEEN.finditer(where_text):
            qualifier, column, low, high = match.groups()
            if usable(match):
                predicates.append(Predicate(ref(qualifier, column), 'BETWEEN',
                                            (parse_value(low, masked), parse_value(high, masked))))
                consumed.append(match.span())

        for match in _IN_LIST.finditer(where_text):
            qualifier, column, items = match.group(1), match.group(2), match.group(3)
            if usable(match):
                values = tuple(parse_value(v, masked) for v in split_top_level(items))
                predicates.append(Predicate(ref(qualifier, column), 'IN', values))

        for match in _COMPARISON.finditer(where_text):
            qualifier, column, op, value = match.groups()
            if op in ('<>', '!=') or not usable(match):
                continue
            if any(start <= match.start() < end for start, end in consumed):
                continue
            predicates.append(Predicate(ref(qualifier, column), op, (parse_value(value, masked),)))
        return predicates
