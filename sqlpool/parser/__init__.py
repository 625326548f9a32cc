"""
SQL parsing: query features and statement classification
"""

from .query_parser import (QueryParser, ParsedQuery, TableReference, ColumnRef,
                           JoinCondition, Predicate)
from .statements import Statement, StatementKind, parse_statement, parse_options

__all__ = ['QueryParser', 'ParsedQuery', 'TableReference', 'ColumnRef', 'JoinCondition',
           'Predicate', 'Statement', 'StatementKind', 'parse_statement', 'parse_options']
