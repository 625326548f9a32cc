"""
SQL text helpers: literal masking, parenthesis-aware splitting, identifiers
"""

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Optional

LITERAL_TOKEN = re.compile(r'__lit(\d+)__')
NUMBER = re.compile(r'^[+-]?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?$')


@dataclass
class MaskedSql:
    """
    SQL text with comments removed and string literals replaced

    Attributes:
        text: Statement with every string literal replaced by __lit<n>__
        literals: Literal contents, indexed by n
    """
    text: str
    literals: List[str]

    def literal(self, token: str) -> Optional[str]:
        match = LITERAL_TOKEN.fullmatch(token.strip())
        if not match:
            return None
        return self.literals[int(match.group(1))]

    def unmask(self, text: Optional[str] = None) -> str:
        """Restore literals as properly quoted SQL strings"""
        source = self.text if text is None else text

        def restore(match):
            value = self.literals[int(match.group(1))]
            return "'" + value.replace("'", "''") + "'"

        return LITERAL_TOKEN.sub(restore, source)


def mask_sql(sql: str) -> MaskedSql:
    """
    Remove comments and mask string literals in one pass

    Handles '' escapes and N'...' unicode literals.
    """
    out: List[str] = []
    literals: List[str] = []
    i = 0
    n = len(sql)
    while i < n:
        ch = sql[i]
        if sql.startswith('--', i):
            j = sql.find('\n', i)
            i = n if j < 0 else j
            continue
        if sql.startswith('/*', i):
            j = sql.find('*/', i + 2)
            i = n if j < 0 else j + 2
            out.append(' ')
            continue
        is_unicode = (ch in 'nN' and i + 1 < n and sql[i + 1] == "'"
                      and (i == 0 or not (sql[i - 1].isalnum() or sql[i - 1] == '_')))
        if ch == "'" or is_unicode:
            j = i + (2 if is_unicode else 1)
            buf = []
            while j < n:
                if sql[j] == "'":
                    if j + 1 < n and sql[j + 1] == "'":
                        buf.append("'")
                        j += 2
                        continue
                    break
                buf.append(sql[j])
                j += 1
            literals.append(''.join(buf))
            out.append(f"__lit{len(literals) - 1}__")
            i = j + 1
            continue
        out.append(ch)
        i += 1
    return MaskedSql(''.join(out), literals)


def brackets_to_quotes(text: str) -> str:
    """[identifier] -> "identifier" """
    return re.sub(r'\[([^\]]*)\]', r'"\1"', text)


def flatten_parentheses(text: str) -> str:
    """
    Blank out everything nested inside parentheses

    The result has the same length as the input, so positions found in
    the flattened text index the original.
    """
    out = []
    depth = 0
    for ch in text:
        if ch == '(':
            out.append(ch if depth == 0 else ' ')
            depth += 1
        elif ch == ')':
            depth = max(0, depth - 1)
            out.append(ch if depth == 0 else ' ')
        else:
            out.append(ch if depth == 0 else ' ')
    return ''.join(out)


def find_matching_paren(text: str, open_index: int) -> int:
    """
    Index of the parenthesis closing the one at open_index

    Raises:
        ValueError: Unbalanced parentheses
    """
    depth = 0
    for idx in range(open_index, len(text)):
        if text[idx] == '(':
            depth += 1
        elif text[idx] == ')':
            depth -= 1
            if depth == 0:
                return idx
    raise ValueError("Unbalanced parentheses")


def split_top_level(text: str, separator: str = ',') -> List[str]:
    """Split on a separator that is not nested inside parentheses"""
    parts = []
    depth = 0
    current = []
    for ch in text:
        if ch == '(':
            depth += 1
        elif ch == ')':
            depth -= 1
        if ch == separator and depth == 0:
            parts.append(''.join(current))
            current = []
        else:
            current.append(ch)
    tail = ''.join(current)
    if tail.strip() or parts:
        parts.append(tail)
    return [part.strip() for part in parts]


_CONJUNCT_TOKEN = re.compile(r'\(|\)|\b(?:CASE|END|BETWEEN|AND)\b', re.IGNORECASE)


def split_conjuncts(text: str) -> List[str]:
    """
    Split a boolean expression on its top-level AND operators

    ANDs nested in parentheses or CASE ... END, and the AND of
    BETWEEN x AND y, do not split.
    """
    parts = []
    depth = 0
    in_between = False
    start = 0
    for match in _CONJUNCT_TOKEN.finditer(text):
        token = match.group(0).upper()
        if token in ('(', 'CASE'):
            depth += 1
        elif token in (')', 'END'):
            depth = max(0, depth - 1)
        elif depth == 0 and token == 'BETWEEN':
            in_between = True
        elif depth == 0 and token == 'AND':
            if in_between:
                in_between = False
                continue
            parts.append(text[start:match.start()])
            start = match.end()
    parts.append(text[start:])
    return [part.strip() for part in parts if part.strip()]


def strip_outer_parentheses(text: str) -> str:
    """'((a = b))' -> 'a = b'"""
    text = text.strip()
    while text.startswith('('):
        try:
            closing = find_matching_paren(text, 0)
        except ValueError:
            break
        if closing != len(text) - 1:
            break
        text = text[1:-1].strip()
    return text


def strip_identifier(token: str) -> str:
    """Remove [] / "" quoting from an identifier"""
    token = token.strip()
    if len(token) >= 2 and ((token[0] == '[' and token[-1] == ']') or
                            (token[0] == '"' and token[-1] == '"')):
        return token[1:-1]
    return token


def split_object_name(token: str):
    """
    'dbo.T', '[dbo].[T]', 'T', 'sys.dm_pdw_exec_requests' -> (schema, name)
    """
    parts = [strip_identifier(p) for p in re.split(r'\.(?=(?:[^"]*"[^"]*")*[^"]*$)', token.strip())]
    parts = [p for p in parts if p]
    if not parts:
        return None, token
    if len(parts) == 1:
        return None, parts[0]
    return parts[-2], parts[-1]


def parse_value(token: str, masked: MaskedSql) -> Any:
    """
    Python value of a literal token

    __lit<n>__ -> str, numbers -> int / Decimal, NULL -> None, anything
    else is returned as a bare word.
    """
    token = token.strip()
    literal = masked.literal(token)
    if literal is not None:
        return literal
    if token.upper() == 'NULL':
        return None
    if NUMBER.match(token):
        if re.fullmatch(r'[+-]?\d+', token):
            return int(token)
        return Decimal(token)
    return strip_identifier(token)
