"""In-memory workbook: the reference resource the sheet tools operate on.

Cells hold either a literal value or a formula. Formula values are computed
on read by a small evaluator covering arithmetic, comparisons and a handful
of aggregate functions, which is enough for rules to verify real output.
"""

import ast
import json
import operator
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field

from sheet_agent.utils.constants import ERROR_VALUES

_CELL_RE = re.compile(r"^\$?([A-Z]{1,3})\$?(\d+)$")
_COLUMN_RE = re.compile(r"^\$?([A-Z]{1,3})$")
_ROW_RE = re.compile(r"^\$?(\d+)$")


class RangeError(ValueError):
    """Raised for an address that cannot be parsed."""


# --- A1 helpers ---


def column_to_index(column: str) -> int:
    """Convert a column label to a zero-based index ("A" -> 0, "AA" -> 26)."""
    index = 0
    for char in column.upper():
        if not "A" <= char <= "Z":
            raise RangeError(f"Invalid column: {column}")
        index = index * 26 + (ord(char) - ord("A") + 1)
    return index - 1


def index_to_column(index: int) -> str:
    """Convert a zero-based index to a column label (0 -> "A", 26 -> "AA")."""
    if index < 0:
        raise RangeError(f"Invalid column index: {index}")
    label = ""
    index += 1
    while index:
        index, remainder = divmod(index - 1, 26)
        label = chr(ord("A") + remainder) + label
    return label


def parse_cell(address: str) -> tuple[int, int]:
    """Parse "B3" into zero-based (row, column)."""
    match = _CELL_RE.match(address.strip().upper())
    if not match:
        raise RangeError(f"Invalid cell address: {address}")
    row = int(match.group(2))
    if row < 1:
        raise RangeError(f"Invalid cell address: {address}")
    return row - 1, column_to_index(match.group(1))


def cell_address(row: int, column: int) -> str:
    return f"{index_to_column(column)}{row + 1}"


@dataclass(frozen=True)
class Bounds:
    """Zero-based inclusive rectangle."""

    top: int
    left: int
    bottom: int
    right: int

    @property
    def rows(self) -> int:
        return self.bottom - self.top + 1

    @property
    def columns(self) -> int:
        return self.right - self.left + 1

    @property
    def cell_count(self) -> int:
        return self.rows * self.columns

    def cells(self) -> list[tuple[int, int]]:
        return [
            (r, c)
            for r in range(self.top, self.bottom + 1)
            for c in range(self.left, self.right + 1)
        ]

    def to_a1(self) -> str:
        start = cell_address(self.top, self.left)
        end = cell_address(self.bottom, self.right)
        return start if start == end else f"{start}:{end}"


def parse_range(address: str, max_row: int = 0, max_column: int = 0) -> Bounds:
    """Parse "A1:C3", "B2", "A:C" or "2:5" into bounds.

    Whole-column and whole-row forms are clipped to ``max_row`` and
    ``max_column`` (zero-based, inclusive).
    """
    text = address.strip().upper()
    if not text:
        raise RangeError("Empty range address")
    start, _, end = text.partition(":")
    end = end or start

    if _COLUMN_RE.match(start) and _COLUMN_RE.match(end):
        left, right = column_to_index(start.strip("$")), column_to_index(end.strip("$"))
        top, bottom = 0, max_row
    elif _ROW_RE.match(start) and _ROW_RE.match(end):
        top, bottom = int(start.strip("$")) - 1, int(end.strip("$")) - 1
        left, right = 0, max_column
        if top < 0 or bottom < 0:
            raise RangeError(f"Invalid range address: {address}")
    else:
        top, left = parse_cell(start)
        bottom, right = parse_cell(end)

    return Bounds(min(top, bottom), min(left, right), max(top, bottom), max(left, right))


def split_address(address: str) -> tuple[str | None, str]:
    """Split "Sheet1!A1:B2" or "'My Sheet'!A1" into (sheet, range)."""
    if "!" not in address:
        return None, address.strip()
    sheet, _, rng = address.rpartition("!")
    sheet = sheet.strip()
    if len(sheet) >= 2 and sheet[0] == sheet[-1] == "'":
        sheet = sheet[1:-1]
    return sheet, rng.strip()


def is_error_value(value: Any) -> bool:
    return isinstance(value, str) and value.strip().upper() in ERROR_VALUES


# --- Workbook ---


@dataclass
class Cell:
    value: Any = None
    formula: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.formula is None and self.value in (None, "")


@dataclass
class Sheet:
    name: str
    cells: dict[tuple[int, int], Cell] = field(default_factory=dict)

    def used_bounds(self) -> Bounds | None:
        used = [key for key, cell in self.cells.items() if not cell.is_empty]
        if not used:
            return None
        return Bounds(
            0,
            0,
            max(r for r, _ in used),
            max(c for _, c in used),
        )


class RangeData(BaseModel):
    """Values and formulas of a rectangular region."""

    sheet: str
    address: str
    values: list[list[Any]] = Field(default_factory=list)
    formulas: list[list[Any]] = Field(default_factory=list)


class ResourceReader(Protocol):
    """Read access to the external document, used by rules and snapshots."""

    async def read_range(self, sheet: str, address: str) -> RangeData: ...

    async def sample_rows(
        self, sheet: str, address: str | None = None, count: int = 5
    ) -> list[list[Any]]: ...

    async def get_column_formulas(
        self, sheet: str, column: str, start_row: int, count: int
    ) -> list[str | None]: ...

    async def used_range(self, sheet: str) -> str | None: ...

    async def sheet_names(self) -> list[str]: ...

    async def active_sheet(self) -> str: ...


class Workbook:
    """Mutable in-memory spreadsheet document."""

    def __init__(self, sheet_names: list[str] | None = None) -> None:
        self.sheets: dict[str, Sheet] = {}
        for name in sheet_names or ["Sheet1"]:
            self.sheets[name] = Sheet(name)
        self.active_sheet = next(iter(self.sheets), "Sheet1")
        self.selection: tuple[str, str] = (self.active_sheet, "A1")

    # --- structure ---

    def has_sheet(self, name: str) -> bool:
        return name in self.sheets

    def resolve_sheet_name(self, name: str) -> str | None:
        """Return the exact sheet name for a case-insensitive match."""
        if name in self.sheets:
            return name
        for existing in self.sheets:
            if existing.lower() == name.strip().lower():
                return existing
        return None

    def sheet(self, name: str) -> Sheet:
        try:
            return self.sheets[name]
        except KeyError:
            raise RangeError(f"Sheet not found: {name}") from None

    def create_sheet(self, name: str) -> Sheet:
        if name in self.sheets:
            raise ValueError(f"Sheet already exists: {name}")
        self.sheets[name] = Sheet(name)
        return self.sheets[name]

    def delete_sheet(self, name: str) -> None:
        self.sheet(name)
        if len(self.sheets) == 1:
            raise ValueError("Cannot delete the only sheet in a workbook")
        del self.sheets[name]
        if self.active_sheet == name:
            self.active_sheet = next(iter(self.sheets))
            self.selection = (self.active_sheet, "A1")

    def bounds(self, sheet: str, address: str) -> Bounds:
        used = self.sheet(sheet).used_bounds()
        max_row = used.bottom if used else 0
        max_column = used.right if used else 0
        return parse_range(address, max_row, max_column)

    def used_range(self, sheet: str) -> str | None:
        used = self.sheet(sheet).used_bounds()
        return used.to_a1() if used else None

    # --- reads ---

    def read(self, sheet: str, address: str) -> RangeData:
        bounds = self.bounds(sheet, address)
        values: list[list[Any]] = []
        formulas: list[list[Any]] = []
        for r in range(bounds.top, bounds.bottom + 1):
            values.append([self.value_at(sheet, r, c) for c in range(bounds.left, bounds.right + 1)])
            formulas.append(
                [self._formula_or_value(sheet, r, c) for c in range(bounds.left, bounds.right + 1)]
            )
        return RangeData(sheet=sheet, address=bounds.to_a1(), values=values, formulas=formulas)

    def value_at(self, sheet: str, row: int, column: int) -> Any:
        return FormulaEvaluator(self).cell_value(sheet, row, column)

    def _formula_or_value(self, sheet: str, row: int, column: int) -> Any:
        cell = self.sheet(sheet).cells.get((row, column))
        if cell is None:
            return None
        return cell.formula if cell.formula is not None else cell.value

    # --- writes ---

    def write(self, sheet: str, address: str, values: list[list[Any]]) -> Bounds:
        """Write a 2-D block anchored at the range's top-left cell.

        Strings beginning with "=" are stored as formulas.
        """
        target = self.sheet(sheet)
        bounds = self.bounds(sheet, address)
        if not values or not all(isinstance(row, list) for row in values):
            raise ValueError("values must be a non-empty 2-D list")
        height, width = len(values), max(len(row) for row in values)
        if bounds.cell_count > 1 and (height, width) != (bounds.rows, bounds.columns):
            raise ValueError(
                f"values are {height}x{width} but range {bounds.to_a1()} is "
                f"{bounds.rows}x{bounds.columns}"
            )
        for i, row in enumerate(values):
            for j, value in enumerate(row):
                key = (bounds.top + i, bounds.left + j)
                if isinstance(value, str) and value.startswith("="):
                    target.cells[key] = Cell(formula=value)
                elif value in (None, ""):
                    target.cells.pop(key, None)
                else:
                    target.cells[key] = Cell(value=value)
        return Bounds(bounds.top, bounds.left, bounds.top + height - 1, bounds.left + width - 1)

    def set_formula(self, sheet: str, address: str, formula: str) -> Bounds:
        """Set a formula on every cell of a range, adjusting relative references."""
        target = self.sheet(sheet)
        bounds = self.bounds(sheet, address)
        if not formula.startswith("="):
            formula = f"={formula}"
        for r, c in bounds.cells():
            target.cells[(r, c)] = Cell(
                formula=shift_formula(formula, r - bounds.top, c - bounds.left)
            )
        return bounds

    def fill_formula(self, sheet: str, source: str, address: str) -> Bounds:
        """Copy the source cell's formula across a range, adjusting references."""
        target = self.sheet(sheet)
        src_row, src_col = parse_cell(source)
        cell = target.cells.get((src_row, src_col))
        if cell is None or cell.formula is None:
            raise ValueError(f"Source cell {source} has no formula")
        bounds = self.bounds(sheet, address)
        for r, c in bounds.cells():
            target.cells[(r, c)] = Cell(
                formula=shift_formula(cell.formula, r - src_row, c - src_col)
            )
        return bounds

    def clear(self, sheet: str, address: str) -> Bounds:
        target = self.sheet(sheet)
        bounds = self.bounds(sheet, address)
        for key in bounds.cells():
            target.cells.pop(key, None)
        return bounds

    def delete_rows(self, sheet: str, start_row: int, end_row: int) -> int:
        """Delete 1-based rows [start_row, end_row] and shift the rest up."""
        if start_row < 1 or end_row < start_row:
            raise ValueError(f"Invalid row span: {start_row}-{end_row}")
        target = self.sheet(sheet)
        top, bottom = start_row - 1, end_row - 1
        count = bottom - top + 1
        shifted: dict[tuple[int, int], Cell] = {}
        for (r, c), cell in target.cells.items():
            if r < top:
                shifted[(r, c)] = cell
            elif r > bottom:
                shifted[(r - count, c)] = cell
        target.cells = shifted
        return count

    def restore(
        self,
        sheet: str,
        address: str,
        values: list[list[Any]],
        formulas: list[list[Any]] | None = None,
    ) -> Bounds:
        """Put a captured region back exactly, clearing cells that were empty."""
        if not self.has_sheet(sheet):
            self.create_sheet(sheet)
        target = self.sheet(sheet)
        bounds = parse_range(address)
        for i in range(bounds.rows):
            for j in range(bounds.columns):
                key = (bounds.top + i, bounds.left + j)
                formula = _grid_get(formulas, i, j)
                value = _grid_get(values, i, j)
                if isinstance(formula, str) and formula.startswith("="):
                    target.cells[key] = Cell(formula=formula)
                elif value in (None, ""):
                    target.cells.pop(key, None)
                else:
                    target.cells[key] = Cell(value=value)
        return bounds

    def select(self, sheet: str, address: str) -> None:
        self.sheet(sheet)
        self.active_sheet = sheet
        self.selection = (sheet, address)

    # --- (de)serialization ---

    def to_dict(self) -> dict[str, Any]:
        sheets: dict[str, list[list[Any]]] = {}
        for name, sheet in self.sheets.items():
            used = sheet.used_bounds()
            rows: list[list[Any]] = []
            if used:
                for r in range(used.bottom + 1):
                    rows.append(
                        [self._formula_or_value(name, r, c) for c in range(used.right + 1)]
                    )
            sheets[name] = rows
        return {"active": self.active_sheet, "sheets": sheets}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Workbook":
        """Build a workbook from ``{"active": name, "sheets": {name: rows}}``."""
        sheets: dict[str, list[list[Any]]] = data.get("sheets") or {"Sheet1": []}
        workbook = cls(list(sheets))
        for name, rows in sheets.items():
            if rows:
                width = max(len(row) for row in rows) or 1
                padded = [row + [None] * (width - len(row)) for row in rows]
                end = cell_address(len(padded) - 1, width - 1)
                workbook.write(name, f"A1:{end}", padded)
        active = data.get("active")
        if active and workbook.has_sheet(active):
            workbook.select(active, "A1")
        return workbook

    @classmethod
    def from_json_file(cls, path: str | Path) -> "Workbook":
        with open(path, encoding="utf-8") as f:
            return cls.from_dict(json.load(f))


def _grid_get(grid: list[list[Any]] | None, i: int, j: int) -> Any:
    if not grid or i >= len(grid) or j >= len(grid[i]):
        return None
    return grid[i][j]


class WorkbookReader:
    """ResourceReader over an in-memory workbook."""

    def __init__(self, workbook: Workbook) -> None:
        self.workbook = workbook

    async def read_range(self, sheet: str, address: str) -> RangeData:
        return self.workbook.read(sheet, address)

    async def sample_rows(
        self, sheet: str, address: str | None = None, count: int = 5
    ) -> list[list[Any]]:
        address = address or self.workbook.used_range(sheet)
        if not address:
            return []
        return self.workbook.read(sheet, address).values[:count]

    async def get_column_formulas(
        self, sheet: str, column: str, start_row: int, count: int
    ) -> list[str | None]:
        address = f"{column}{start_row}:{column}{start_row + count - 1}"
        formulas = self.workbook.read(sheet, address).formulas
        return [
            row[0] if isinstance(row[0], str) and row[0].startswith("=") else None
            for row in formulas
        ]

    async def used_range(self, sheet: str) -> str | None:
        if not self.workbook.has_sheet(sheet):
            return None
        return self.workbook.used_range(sheet)

    async def sheet_names(self) -> list[str]:
        return list(self.workbook.sheets)

    async def active_sheet(self) -> str:
        return self.workbook.active_sheet


# --- Formulas ---

_REF_RE = re.compile(
    r"(?<![A-Za-z0-9_.\"])"
    r"(?:(?P<sheet>'[^']+'|[A-Za-z_][A-Za-z0-9_]*)!)?"
    r"(?P<cd1>\$?)(?P<c1>[A-Za-z]{1,3})(?P<rd1>\$?)(?P<r1>\d+)"
    r"(?::(?P<cd2>\$?)(?P<c2>[A-Za-z]{1,3})(?P<rd2>\$?)(?P<r2>\d+))?"
    r"(?![A-Za-z0-9_(])"
)


def shift_formula(formula: str, row_offset: int, column_offset: int) -> str:
    """Move relative references by the given offsets; "$" parts stay fixed."""
    if row_offset == 0 and column_offset == 0:
        return formula

    def _shift(column: str, col_abs: str, row: str, row_abs: str) -> str:
        new_column = column.upper()
        if not col_abs:
            new_column = index_to_column(max(0, column_to_index(column) + column_offset))
        new_row = int(row)
        if not row_abs:
            new_row = max(1, new_row + row_offset)
        return f"{col_abs}{new_column}{row_abs}{new_row}"

    def _replace(match: re.Match) -> str:
        prefix = f"{match.group('sheet')}!" if match.group("sheet") else ""
        text = prefix + _shift(
            match.group("c1"), match.group("cd1"), match.group("r1"), match.group("rd1")
        )
        if match.group("c2"):
            text += ":" + _shift(
                match.group("c2"), match.group("cd2"), match.group("r2"), match.group("rd2")
            )
        return text

    return _REF_RE.sub(_replace, formula)


class FormulaError(Exception):
    def __init__(self, code: str) -> None:
        super().__init__(code)
        self.code = code


def _numbers(values: list[Any]) -> list[float]:
    flat: list[Any] = []
    for value in values:
        flat.extend(value if isinstance(value, list) else [value])
    for value in flat:
        if is_error_value(value):
            raise FormulaError(value)
    return [v for v in flat if isinstance(v, (int, float)) and not isinstance(v, bool)]


def _average(*args: Any) -> float:
    numbers = _numbers(list(args))
    if not numbers:
        raise FormulaError("#DIV/0!")
    return sum(numbers) / len(numbers)


_FUNCTIONS: dict[str, Any] = {
    "SUM": lambda *a: sum(_numbers(list(a))),
    "AVERAGE": _average,
    "MIN": lambda *a: min(_numbers(list(a)), default=0),
    "MAX": lambda *a: max(_numbers(list(a)), default=0),
    "COUNT": lambda *a: len(_numbers(list(a))),
    "ABS": lambda x: abs(_scalar(x)),
    "ROUND": lambda x, digits=0: round(_scalar(x), int(digits)),
    "IF": lambda cond, a=True, b=False: a if cond else b,
}

_BINARY = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Pow: operator.pow,
}
_COMPARE = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}


def _scalar(value: Any) -> Any:
    if isinstance(value, list):
        raise FormulaError("#VALUE!")
    if is_error_value(value):
        raise FormulaError(value)
    return 0 if value is None else value


class FormulaEvaluator:
    """Evaluate stored formulas against the current workbook contents."""

    def __init__(self, workbook: Workbook) -> None:
        self.workbook = workbook
        self._visiting: set[tuple[str, int, int]] = set()

    def cell_value(self, sheet: str, row: int, column: int) -> Any:
        cell = self.workbook.sheet(sheet).cells.get((row, column))
        if cell is None:
            return None
        if cell.formula is None:
            return cell.value
        key = (sheet, row, column)
        if key in self._visiting:
            return "#CALC!"
        self._visiting.add(key)
        try:
            return self.evaluate(sheet, cell.formula)
        finally:
            self._visiting.discard(key)

    def evaluate(self, sheet: str, formula: str) -> Any:
        names: dict[str, Any] = {}

        def _bind(match: re.Match) -> str:
            ref_sheet = match.group("sheet")
            if ref_sheet:
                ref_sheet = ref_sheet.strip("'")
                resolved = self.workbook.resolve_sheet_name(ref_sheet)
                if resolved is None:
                    raise FormulaError("#REF!")
                ref_sheet = resolved
            else:
                ref_sheet = sheet
            start = f"{match.group('c1')}{match.group('r1')}"
            if match.group("c2"):
                bounds = parse_range(f"{start}:{match.group('c2')}{match.group('r2')}")
                value: Any = [
                    self.cell_value(ref_sheet, r, c) for r, c in bounds.cells()
                ]
            else:
                value = self.cell_value(ref_sheet, *parse_cell(start))
            name = f"_ref{len(names)}"
            names[name] = value
            return name

        try:
            expression = _REF_RE.sub(_bind, formula.lstrip("=").strip())
            expression = expression.replace("<>", "!=").replace("^", "**")
            expression = re.sub(r"(?<![<>!=])=(?!=)", "==", expression)
            tree = ast.parse(expression, mode="eval")
            result = self._eval(tree.body, names)
        except FormulaError as e:
            return e.code
        except ZeroDivisionError:
            return "#DIV/0!"
        except (OverflowError, RecursionError):
            return "#NUM!"
        except (SyntaxError, KeyError):
            return "#NAME?"
        except (TypeError, ValueError):
            return "#VALUE!"
        if isinstance(result, list):
            return "#VALUE!"
        if isinstance(result, float) and result.is_integer():
            return int(result)
        return result

    def _eval(self, node: ast.AST, names: dict[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            if node.id.upper() in ("TRUE", "FALSE"):
                return node.id.upper() == "TRUE"
            return names[node.id]
        if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.USub, ast.UAdd)):
            operand = _scalar(self._eval(node.operand, names))
            return -operand if isinstance(node.op, ast.USub) else operand
        if isinstance(node, ast.BinOp) and type(node.op) in _BINARY:
            left = _scalar(self._eval(node.left, names))
            right = _scalar(self._eval(node.right, names))
            return _BINARY[type(node.op)](left, right)
        if isinstance(node, ast.Compare) and len(node.ops) == 1:
            left = _scalar(self._eval(node.left, names))
            right = _scalar(self._eval(node.comparators[0], names))
            return _COMPARE[type(node.ops[0])](left, right)
        if isinstance(node, ast.Call) and isinstance(node.func, ast.Name):
            func = _FUNCTIONS.get(node.func.id.upper())
            if func is None:
                raise FormulaError("#NAME?")
            return func(*(self._eval(arg, names) for arg in node.args))
        raise FormulaError("#NAME?")
