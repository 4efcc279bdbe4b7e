"""
TOON (Token-Oriented Object Notation) tabular codec.

Encodes extraction tables into a compact, header-described text block and
decodes model replies in that format back into records.

Format:
    requirements[2]{id,name,priority}:
      REQ-001,User Login,high
      REQ-002,"Export, import and sync",medium

The header declares the table name, its row count and the field order; rows
follow, indented by two spaces, with values in header order. Field names are
written once per table instead of once per row, which is what keeps the
format shorter than a JSON list of objects.

Quoting: a value is wrapped in double quotes when it contains a comma, a
double quote, a backslash, a newline or carriage return, or has leading or
trailing whitespace. Inside quotes a double quote is doubled and backslash,
newline and carriage return are written as ``\\\\``, ``\\n`` and ``\\r``.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from config.settings import settings
from core.exceptions import DecodeError
from core.token_counter import token_estimator

logger = logging.getLogger(__name__)

DELIMITER = ","
INDENT = "  "
LIST_SEPARATOR = ";"

_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$")
_HEADER_PATTERN = re.compile(
    r"^\s*([A-Za-z_][A-Za-z0-9_\-]*)\[(\d+)\]\{([^{}]*)\}:\s*$"
)
_FENCE_PATTERN = re.compile(r"^\s*```")
_JSON_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)
_NEEDS_QUOTES = re.compile(r'[,"\\\n\r]')
# rows end only at CR/LF; form feeds and Unicode separators stay in the value
_LINE_BREAK = re.compile(r"\r\n|\r|\n")

_ESCAPES = {"\\": "\\\\", "\n": "\\n", "\r": "\\r"}
_UNESCAPES = {"\\": "\\", "n": "\n", "r": "\r", '"': '"'}

Row = Union[Mapping[str, Any], Sequence[Any]]


@dataclass
class DecodeResult:
    """Tables decoded from a single response body."""

    tables: Dict[str, List[Dict[str, str]]] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    used_fallback: bool = False

    @property
    def row_count(self) -> int:
        return sum(len(rows) for rows in self.tables.values())


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple, set, frozenset)):
        return LIST_SEPARATOR.join(_stringify(v) for v in value)
    return str(value)


def encode_value(value: Any) -> str:
    """Encode a single cell, quoting and escaping only when required."""
    text = _stringify(value)
    if not text:
        return ""
    if _NEEDS_QUOTES.search(text) or text != text.strip():
        escaped = "".join(_ESCAPES.get(ch, ch) for ch in text).replace('"', '""')
        return f'"{escaped}"'
    return text


def _check_name(name: str, what: str) -> None:
    if not isinstance(name, str) or not _NAME_PATTERN.match(name):
        raise ValueError(f"Invalid {what} '{name}' for TOON encoding")


def encode(schema_name: str, field_names: Sequence[str], rows: Sequence[Row]) -> str:
    """
    Encode one table.

    Args:
        schema_name: Table name written in the header
        field_names: Ordered field list; every row is written in this order
        rows: Mappings (missing keys encode as empty) or positional sequences

    Returns:
        The TOON block, header line first, without a trailing newline.
    """
    _check_name(schema_name, "schema name")
    if not field_names:
        raise ValueError(f"Table '{schema_name}' needs at least one field")
    for name in field_names:
        _check_name(name, "field name")

    lines = [f"{schema_name}[{len(rows)}]{{{DELIMITER.join(field_names)}}}:"]
    for row in rows:
        if isinstance(row, Mapping):
            values = [row.get(name) for name in field_names]
        else:
            values = list(row)[: len(field_names)]
            values += [None] * (len(field_names) - len(values))
        line = DELIMITER.join(encode_value(v) for v in values)
        # a blank row line would end the block
        lines.append(INDENT + (line or '""'))
    return "\n".join(lines)


def encode_tables(tables: Mapping[str, Sequence[Mapping[str, Any]]],
                  field_names: Optional[Mapping[str, Sequence[str]]] = None) -> str:
    """Encode several tables separated by blank lines.

    Field order comes from ``field_names`` when given, otherwise from the
    order in which keys first appear across the table's rows.
    """
    blocks = []
    for schema_name, rows in tables.items():
        if field_names and schema_name in field_names:
            fields = list(field_names[schema_name])
        else:
            fields = []
            for row in rows:
                for key in row:
                    if key not in fields:
                        fields.append(key)
        if not fields:
            continue
        blocks.append(encode(schema_name, fields, rows))
    return "\n\n".join(blocks)


def split_row(line: str) -> List[str]:
    """Split a row line into cell values, honouring quotes and escapes."""
    values: List[str] = []
    current: List[str] = []
    quoted = False
    in_quotes = False
    i = 0
    length = len(line)
    while i < length:
        ch = line[i]
        if in_quotes:
            if ch == '"':
                if i + 1 < length and line[i + 1] == '"':
                    current.append('"')
                    i += 2
                    continue
                in_quotes = False
            elif ch == "\\" and i + 1 < length:
                nxt = line[i + 1]
                current.append(_UNESCAPES.get(nxt, "\\" + nxt))
                i += 2
                continue
            else:
                current.append(ch)
        elif ch == DELIMITER:
            values.append("".join(current) if quoted else "".join(current).strip())
            current = []
            quoted = False
        elif quoted:
            # text after a closing quote; keep anything but padding
            if not ch.isspace():
                current.append(ch)
        elif ch == '"' and not "".join(current).strip():
            current = []
            quoted = True
            in_quotes = True
        else:
            current.append(ch)
        i += 1
    values.append("".join(current) if quoted else "".join(current).strip())
    return values


class ToonCodec:
    """Decoder for model responses carrying one or more TOON tables."""

    def decode(self, text: str) -> DecodeResult:
        """
        Decode all TOON tables found in ``text``.

        Prose and code fences around the tables are ignored. Rows with the
        wrong number of cells are padded or truncated and reported as
        warnings. When no table header is present the text is decoded as a
        JSON object instead.

        Raises:
            DecodeError: if neither a TOON table nor a JSON object can be read
        """
        if not text or not text.strip():
            raise DecodeError("Empty response")

        lines = _LINE_BREAK.split(text)
        result = DecodeResult()
        found_header = False
        i = 0
        while i < len(lines):
            match = _HEADER_PATTERN.match(lines[i])
            if not match:
                i += 1
                continue
            found_header = True
            i = self._read_block(lines, i, match, result)

        if found_header:
            logger.debug(
                f"Decoded {len(result.tables)} TOON tables with {result.row_count} rows "
                f"({len(result.warnings)} warnings)"
            )
            return result

        return self._decode_json_fallback(text)

    def _read_block(self, lines: List[str], header_index: int, match, result: DecodeResult) -> int:
        name = match.group(1)
        declared = int(match.group(2))
        fields = [f.strip() for f in match.group(3).split(DELIMITER) if f.strip()]
        rows = result.tables.setdefault(name, [])
        if not fields:
            result.warnings.append(f"{name}: header declares no fields")

        read = 0
        i = header_index + 1
        while i < len(lines):
            line = lines[i]
            if not line.strip() or _FENCE_PATTERN.match(line) or _HEADER_PATTERN.match(line):
                break
            indented = line.startswith((" ", "\t"))
            if not indented and read >= declared:
                break
            if fields:
                values = split_row(line.strip())
                if len(values) != len(fields):
                    result.warnings.append(
                        f"{name} row {read + 1}: expected {len(fields)} fields, got {len(values)}"
                    )
                    values = (values + [""] * len(fields))[: len(fields)]
                rows.append(dict(zip(fields, values)))
            read += 1
            i += 1

        if read != declared:
            result.warnings.append(f"{name}: header declares {declared} rows, found {read}")
        return i

    def _decode_json_fallback(self, text: str) -> DecodeResult:
        candidates = [m.group(1) for m in _JSON_FENCE_PATTERN.finditer(text)]
        start, end = text.find("{"), text.rfind("}")
        if start != -1 and end > start:
            candidates.append(text[start:end + 1])
        candidates.append(text)

        data = None
        for candidate in candidates:
            try:
                data = json.loads(candidate)
            except (ValueError, TypeError):
                continue
            if isinstance(data, dict):
                break
            data = None

        if data is None:
            raise DecodeError("Response contains neither a TOON table nor a JSON object")

        result = DecodeResult(used_fallback=True)
        for key, value in data.items():
            if isinstance(value, list):
                rows = [self._flatten(item) for item in value if isinstance(item, dict)]
                if len(rows) != len(value):
                    result.warnings.append(f"{key}: skipped {len(value) - len(rows)} non-object items")
                result.tables.setdefault(str(key), []).extend(rows)
            elif isinstance(value, dict):
                result.tables.setdefault(str(key), []).append(self._flatten(value))
        logger.info(f"Decoded response via JSON fallback: {len(result.tables)} tables")
        return result

    @staticmethod
    def _flatten(item: Dict[str, Any]) -> Dict[str, str]:
        return {str(k): _stringify(v) for k, v in item.items()}


def compare_with_json(schema_name: str, field_names: Sequence[str], rows: Sequence[Row]) -> Dict[str, Any]:
    """Size of the TOON encoding against the equivalent JSON document."""
    toon = encode(schema_name, field_names, rows)
    records = [
        dict(row) if isinstance(row, Mapping) else dict(zip(field_names, row))
        for row in rows
    ]
    as_json = json.dumps({schema_name: records})
    savings = len(as_json) - len(toon)
    return {
        "toon": len(toon),
        "json": len(as_json),
        "savings": savings,
        "savings_percent": f"{(savings / len(as_json) * 100):.1f}%" if as_json else "0.0%",
    }


# Global codec instance
toon_codec = ToonCodec()


def decode(text: str) -> DecodeResult:
    return toon_codec.decode(text)


def estimate_tokens(tables: Mapping[str, Sequence[Mapping[str, Any]]], model_id: Optional[str] = None) -> int:
    """Estimated token length of ``tables`` once encoded."""
    return token_estimator.estimate(encode_tables(tables), model_id or settings.default_model)
