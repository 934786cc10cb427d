"""Heuristic unit extractor for brace-delimited (JavaScript-style) source text.

A single left-to-right pass tracks one lexical state (code, line comment,
block comment, string with a known delimiter) and emits a candidate unit at
three triggers:

- the ``function`` keyword (declared functions and function expressions)
- the ``=>`` token (arrow functions, block or expression bodied)
- an identifier immediately followed by ``(`` whose parameter list is followed
  by ``{`` (method-style definitions such as ``render(h) { ... }``)

Brace, paren and call-name scanning inside a candidate reuse the same
:class:`LexicalState` machine, so brackets inside strings or comments are
never counted.

This is a best-effort extractor, not a grammar-complete parser.  Known limits:

- regex literals are scanned as code, so a quote or bracket inside a regex can
  desynchronise the scan of that one unit
- template literals are one opaque string; a nested backtick inside ``${...}``
  ends the string early
- a unit spanning two ingestion chunks is dropped (its braces never match)
- a call followed by a block on the next line (``fn(x)\\n{``) reads as a method

Candidates with unmatched brackets or no resolvable name are skipped and
counted in :class:`~unitgraph.models.ScanStats`; the scan itself never fails.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from .models import ScanStats, Unit

logger = logging.getLogger(__name__)

# Identifiers followed by "(" that are never calls or method definitions
CONTROL_KEYWORDS = frozenset({
    "if", "for", "while", "switch", "catch", "function", "return", "typeof",
    "new", "with", "do", "else", "try", "finally", "await", "yield", "void",
    "delete", "in", "of", "instanceof", "case", "throw", "super", "import",
    "export", "async", "class", "extends", "const", "let", "var",
})

_QUOTES = ("'", '"', "`")
_IDENT_START = re.compile(r"[A-Za-z_$]")
_IDENT_CHAR = re.compile(r"[A-Za-z0-9_$]")
_ASSIGNMENT_TARGET = re.compile(
    r"(?:\b(?P<decl>const|let|var)\s+)?"
    r"(?P<name>[A-Za-z_$][\w$]*(?:\.[A-Za-z_$][\w$]*)*)\s*=\s*$"
)
_PROPERTY_TARGET = re.compile(r"(?<![\w$])(?P<name>[A-Za-z_$][\w$]*)\s*:\s*$")
_LOOKBACK_CHARS = 200


class Mode(enum.Enum):
    CODE = "code"
    LINE_COMMENT = "line_comment"
    BLOCK_COMMENT = "block_comment"
    STRING = "string"


class LexicalState:
    """Character-level lexical state machine.

    :meth:`advance` consumes the token starting at ``i`` and reports whether
    that character is live code.  Escapes inside strings consume two
    characters, so ``"\\\\"`` closes correctly.
    """

    __slots__ = ("mode", "quote")

    def __init__(self) -> None:
        self.mode = Mode.CODE
        self.quote = ""

    def advance(self, text: str, i: int) -> Tuple[int, bool]:
        ch = text[i]
        nxt = text[i + 1] if i + 1 < len(text) else ""

        if self.mode is Mode.LINE_COMMENT:
            if ch == "\n":
                self.mode = Mode.CODE
            return i + 1, False

        if self.mode is Mode.BLOCK_COMMENT:
            if ch == "*" and nxt == "/":
                self.mode = Mode.CODE
                return i + 2, False
            return i + 1, False

        if self.mode is Mode.STRING:
            if ch == "\\":
                return i + 2, False
            if ch == self.quote:
                self.mode = Mode.CODE
            elif ch == "\n" and self.quote != "`":
                # unterminated single-line string: recover at end of line
                self.mode = Mode.CODE
            return i + 1, False

        if ch == "/" and nxt == "/":
            self.mode = Mode.LINE_COMMENT
            return i + 2, False
        if ch == "/" and nxt == "*":
            self.mode = Mode.BLOCK_COMMENT
            return i + 2, False
        if ch in _QUOTES:
            self.mode = Mode.STRING
            self.quote = ch
            return i + 1, False
        return i + 1, True


def iter_code(text: str, start: int = 0, end: Optional[int] = None) -> Iterator[int]:
    """Yield the indices of live-code characters in ``text[start:end]``."""
    state = LexicalState()
    stop = len(text) if end is None else min(end, len(text))
    i = start
    while i < stop:
        nxt, is_code = state.advance(text, i)
        if is_code:
            yield i
        i = nxt


def find_matching(text: str, open_idx: int, open_ch: str = "{", close_ch: str = "}") -> int:
    """Return the index of the bracket closing ``text[open_idx]``, or -1."""
    depth = 1
    for i in iter_code(text, open_idx + 1):
        ch = text[i]
        if ch == open_ch:
            depth += 1
        elif ch == close_ch:
            depth -= 1
            if depth == 0:
                return i
    return -1


def next_code_char(text: str, start: int) -> int:
    """Index of the first non-whitespace code character at or after ``start``."""
    for i in iter_code(text, start):
        if not text[i].isspace():
            return i
    return -1


def collect_call_names(text: str, start: int, end: int) -> List[str]:
    """Return identifiers followed by ``(`` in ``text[start:end]``, first-seen order."""
    names: List[str] = []
    seen = set()
    prev_is_ident = False
    for i in iter_code(text, start, end):
        ch = text[i]
        is_ident = bool(_IDENT_CHAR.match(ch))
        if is_ident and not prev_is_ident and _IDENT_START.match(ch):
            j = i
            while j < end and _IDENT_CHAR.match(text[j]):
                j += 1
            k = j
            while k < end and text[k] in " \t":
                k += 1
            name = text[i:j]
            if k < end and text[k] == "(" and name not in CONTROL_KEYWORDS and name not in seen:
                seen.add(name)
                names.append(name)
        prev_is_ident = is_ident
    return names


@dataclass
class ExtractionResult:
    units: List[Unit] = field(default_factory=list)
    stats: ScanStats = field(default_factory=ScanStats)


class _ChunkScanner:
    """Single-pass scan of one chunk."""

    def __init__(self, text: str, line_offset: int, original_source: str) -> None:
        self.text = text
        self.line_offset = line_offset
        self.original_source = original_source
        self.units: List[Unit] = []
        self.stats = ScanStats()
        # close paren index -> open paren index, filled as the scan proceeds
        self._paren_open_for: Dict[int, int] = {}

    def run(self) -> ExtractionResult:
        text = self.text
        paren_stack: List[int] = []
        resume_at = 0

        for i in iter_code(text):
            ch = text[i]
            if ch == "(":
                paren_stack.append(i)
            elif ch == ")" and paren_stack:
                self._paren_open_for[i] = paren_stack.pop()

            if i < resume_at:
                continue

            if ch == "f" and self._is_keyword_at(i, "function"):
                resume_at = self._declared_function(i)
            elif ch == "=" and text.startswith("=>", i):
                self._arrow_function(i)
            elif ch == "(" and i > 0 and _IDENT_CHAR.match(text[i - 1]):
                self._method(i)

        logger.debug(
            "Scanned %s (offset %d): %d candidates, %d extracted, %d unmatched, %d unnamed",
            self.original_source, self.line_offset, self.stats.candidates,
            self.stats.extracted, self.stats.unmatched, self.stats.unnamed,
        )
        return ExtractionResult(units=assign_unique_ids(self.units), stats=self.stats)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def _declared_function(self, i: int) -> int:
        """Handle the ``function`` keyword at ``i``; return the resume index."""
        text = self.text
        self.stats.candidates += 1
        j = i + len("function")
        j = self._skip_spaces(j)
        if j < len(text) and text[j] == "*":
            j = self._skip_spaces(j + 1)

        name_end = j
        while name_end < len(text) and _IDENT_CHAR.match(text[name_end]):
            name_end += 1
        name = text[j:name_end]
        paren = self._skip_spaces(name_end)
        if paren >= len(text) or text[paren] != "(":
            self.stats.unmatched += 1
            return i + 1

        span_start = self._with_async_prefix(i)
        if not name:
            target = self._assignment_target(span_start)
            if target is None:
                self.stats.unnamed += 1
                return paren + 1
            name, span_start = target

        close_paren = find_matching(text, paren, "(", ")")
        if close_paren == -1:
            self.stats.unmatched += 1
            return paren + 1
        open_brace = next_code_char(text, close_paren + 1)
        if open_brace == -1 or text[open_brace] != "{":
            self.stats.unmatched += 1
            return paren + 1
        self._emit_block(name, "function", span_start, open_brace)
        return paren + 1

    def _arrow_function(self, i: int) -> None:
        text = self.text
        self.stats.candidates += 1
        j = i - 1
        while j >= 0 and text[j].isspace():
            j -= 1
        if j < 0:
            self.stats.unmatched += 1
            return

        if text[j] == ")":
            params_start = self._paren_open_for.get(j, -1)
            if params_start == -1:
                self.stats.unmatched += 1
                return
        elif _IDENT_CHAR.match(text[j]):
            params_start = j
            while params_start > 0 and _IDENT_CHAR.match(text[params_start - 1]):
                params_start -= 1
        else:
            self.stats.unmatched += 1
            return

        target = self._assignment_target(self._with_async_prefix(params_start))
        if target is None:
            self.stats.unnamed += 1
            return
        name, span_start = target

        body = next_code_char(text, i + 2)
        if body == -1:
            self.stats.unmatched += 1
            return
        if text[body] == "{":
            self._emit_block(name, "arrow", span_start, body)
            return

        body_end = self._expression_end(body)
        if body_end <= body:
            self.stats.unmatched += 1
            return
        self._emit(name, "arrow", span_start, body_end, body, body_end)

    def _method(self, i: int) -> None:
        text = self.text
        start = i - 1
        while start > 0 and _IDENT_CHAR.match(text[start - 1]):
            start -= 1
        name = text[start:i]
        if not _IDENT_START.match(name[0]) or name in CONTROL_KEYWORDS:
            return
        if start > 0 and text[start - 1] == ".":
            return

        close_paren = find_matching(text, i, "(", ")")
        if close_paren == -1:
            # a call or a definition; either way its brackets never close
            self.stats.candidates += 1
            self.stats.unmatched += 1
            return
        open_brace = next_code_char(text, close_paren + 1)
        if open_brace == -1 or text[open_brace] != "{":
            return  # a call, not a definition
        self.stats.candidates += 1
        self._emit_block(name, "method", self._method_prefix(start), open_brace)

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    def _emit_block(self, name: str, kind: str, span_start: int, open_brace: int) -> None:
        close_brace = find_matching(self.text, open_brace)
        if close_brace == -1:
            self.stats.unmatched += 1
            return
        self._emit(name, kind, span_start, close_brace + 1, open_brace, close_brace + 1)

    def _emit(self, name: str, kind: str, span_start: int, span_end: int, body_start: int, body_end: int) -> None:
        text = self.text
        start_line = self.line_offset + text.count("\n", 0, span_start) + 1
        end_line = start_line + text.count("\n", span_start, span_end)
        self.units.append(Unit(
            id=make_unit_id(self.original_source, name, start_line),
            name=name,
            kind=kind,
            code=text[span_start:span_end],
            start_line=start_line,
            end_line=end_line,
            static_dependencies=collect_call_names(text, body_start, body_end),
            original_source=self.original_source,
        ))
        self.stats.extracted += 1

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _is_keyword_at(self, i: int, word: str) -> bool:
        text = self.text
        if not text.startswith(word, i):
            return False
        if i > 0 and (_IDENT_CHAR.match(text[i - 1]) or text[i - 1] == "."):
            return False
        end = i + len(word)
        return end >= len(text) or not _IDENT_CHAR.match(text[end])

    def _skip_spaces(self, j: int) -> int:
        while j < len(self.text) and self.text[j].isspace():
            j += 1
        return j

    def _with_async_prefix(self, pos: int) -> int:
        """Move ``pos`` back over a preceding ``async`` keyword."""
        j = pos
        while j > 0 and self.text[j - 1].isspace():
            j -= 1
        if j >= 5 and self.text[j - 5:j] == "async" and (j == 5 or not _IDENT_CHAR.match(self.text[j - 6])):
            return j - 5
        return pos

    def _method_prefix(self, pos: int) -> int:
        """Move ``pos`` back over the ``*`` and ``async`` of a method head."""
        text = self.text
        j = pos
        while j > 0 and text[j - 1].isspace():
            j -= 1
        if j > 0 and text[j - 1] == "*":
            star = j - 1
            k = star
            while k > 0 and text[k - 1].isspace():
                k -= 1
            # "a * b() {" is not a generator head
            if k == 0 or text[k - 1] in "{},;" or self._with_async_prefix(star) != star:
                pos = star
        return self._with_async_prefix(pos)

    def _assignment_target(self, pos: int) -> Optional[Tuple[str, int]]:
        """Look backward from ``pos`` for ``[const|let|var] name =`` or ``name:``.

        Returns the target name and the index where the statement (or the
        object-literal property) starts.
        """
        window_start = max(0, pos - _LOOKBACK_CHARS)
        match = _ASSIGNMENT_TARGET.search(self.text, window_start, pos)
        if match is None:
            return self._property_target(window_start, pos)
        # "a == (x) => ..." and "a => b => ..." are not assignments
        before = self.text[match.start("name") - 1] if match.start("name") > 0 else ""
        if self.text[match.end("name"):pos].strip().startswith("==") or before in ("=", "!", "<", ">"):
            return None
        start = match.start("decl") if match.group("decl") else match.start("name")
        return match.group("name"), start

    def _property_target(self, window_start: int, pos: int) -> Optional[Tuple[str, int]]:
        match = _PROPERTY_TARGET.search(self.text, window_start, pos)
        if match is None:
            return None
        j = match.start("name") - 1
        while j >= 0 and self.text[j].isspace():
            j -= 1
        # only object-literal members; "a ? b : c" and labels are not
        if j >= 0 and self.text[j] not in "{,":
            return None
        return match.group("name"), match.start("name")

    def _expression_end(self, start: int) -> int:
        """End (exclusive) of an arrow expression body starting at ``start``."""
        text = self.text
        depth = 0
        for i in iter_code(text, start):
            ch = text[i]
            if ch in "([{":
                depth += 1
            elif ch in ")]}":
                if depth == 0:
                    return i
                depth -= 1
            elif depth == 0 and ch in ";,\n":
                return i
        return len(text)


def make_unit_id(original_source: str, name: str, start_line: int) -> str:
    return f"{original_source}:{name}:{start_line}"


def assign_unique_ids(units: List[Unit]) -> List[Unit]:
    """Disambiguate colliding ids with ``~2``, ``~3`` ... in list order."""
    seen: Dict[str, int] = {}
    for unit in units:
        base = unit.id
        if base in seen:
            seen[base] += 1
            candidate = f"{base}~{seen[base]}"
            while candidate in seen:
                seen[base] += 1
                candidate = f"{base}~{seen[base]}"
            unit.id = candidate
            seen[candidate] = 1
        else:
            seen[base] = 1
    return units


def extract_units(chunk: str, line_offset: int = 0, original_source: str = "unknown") -> ExtractionResult:
    """Extract unit drafts (with raw call names) from one chunk of source text."""
    return _ChunkScanner(chunk, line_offset, original_source).run()
