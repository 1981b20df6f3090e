"""SQL generation for exposing extracted CSV files in DuckDB.

Each table becomes a view over ``read_csv`` on its extracted file. With
preload enabled the view is created under a staging name and copied into
a native table carrying the plain table name.
"""

import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .errors import DumpDatabaseError

STAGING_PREFIX = "temp_"

VIEW = "VIEW"
TABLE = "BASE TABLE"

# Column constraints that end the type part of a column definition
_CONSTRAINT_RE = re.compile(
    r"\s+(?:NOT\s+NULL|NULL|PRIMARY\s+KEY|DEFAULT|UNIQUE|CHECK|REFERENCES"
    r"|COLLATE|CONSTRAINT|GENERATED|AUTOINCREMENT)\b.*$",
    re.IGNORECASE | re.DOTALL,
)

_TABLE_CONSTRAINTS = ("PRIMARY", "UNIQUE", "CHECK", "FOREIGN", "CONSTRAINT")

_QUOTES = {'"': '"', "`": "`", "[": "]"}


def quote_identifier(name: str) -> str:
    """Quote an SQL identifier."""
    return '"' + name.replace('"', '""') + '"'


def sql_literal(value: str) -> str:
    """Quote an SQL string literal."""
    return "'" + value.replace("'", "''") + "'"


def _split_top_level(body: str) -> List[str]:
    """Split on commas that are not inside parentheses or quotes."""
    parts = []
    depth = 0
    quote: Optional[str] = None
    current = []

    for ch in body:
        if quote:
            if ch == quote:
                quote = None
        elif ch in _QUOTES:
            quote = _QUOTES[ch]
        elif ch == "'":
            quote = "'"
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == "," and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(ch)

    parts.append("".join(current))
    return parts


def _split_name(definition: str) -> Tuple[str, str]:
    """Split a column definition into (name, rest)."""
    opener = definition[0]
    if opener in _QUOTES:
        end = definition.find(_QUOTES[opener], 1)
        if end == -1:
            raise DumpDatabaseError(f"Unterminated column name in {definition!r}")
        return definition[1:end], definition[end + 1:].strip()

    name, _, rest = definition.partition(" ")
    return name, rest.strip()


def parse_column_schema(schema: str) -> Dict[str, str]:
    """Extract column names and types from a CREATE TABLE statement.

    Only the column list matters; the table name, column constraints and
    table constraints are ignored. Columns without a type default to
    VARCHAR.

    >>> parse_column_schema("CREATE TABLE x(renamed_id INT, name TEXT);")
    {'renamed_id': 'INT', 'name': 'TEXT'}

    Raises:
        DumpDatabaseError: If no column list can be found
    """
    start = schema.find("(")
    end = schema.rfind(")")
    if start == -1 or end <= start:
        raise DumpDatabaseError(f"No column list in table schema: {schema!r}")

    columns: Dict[str, str] = {}
    for definition in _split_top_level(schema[start + 1:end]):
        definition = " ".join(definition.split())
        if not definition:
            continue
        if definition.split(" ", 1)[0].upper() in _TABLE_CONSTRAINTS:
            continue

        name, rest = _split_name(definition)
        column_type = _CONSTRAINT_RE.sub("", " " + rest).strip() or "VARCHAR"
        if not name:
            raise DumpDatabaseError(f"Empty column name in table schema: {schema!r}")
        columns[name] = column_type

    if not columns:
        raise DumpDatabaseError(f"No columns in table schema: {schema!r}")
    return columns


def columns_struct(columns: Dict[str, str]) -> str:
    """Render columns as the struct literal accepted by read_csv."""
    items = ", ".join(
        f"{sql_literal(name)}: {sql_literal(column_type)}"
        for name, column_type in columns.items()
    )
    return "{" + items + "}"


class TableDefinition:
    """SQL needed to expose one extracted CSV file."""

    def __init__(
        self,
        table: str,
        csv_path: Path,
        schema: Optional[str] = None,
        preload: bool = False,
    ):
        """Initialize table definition.

        Args:
            table: Table name (the CSV file stem)
            csv_path: Extracted CSV file; made absolute
            schema: Optional ``CREATE TABLE`` statement naming the columns
            preload: Materialize the view into a native table
        """
        self.table = table
        self.csv_path = Path(csv_path).absolute()
        self.schema = schema
        self.preload = preload

    @property
    def view_name(self) -> str:
        """Name of the CSV-backed view."""
        if self.preload:
            return f"{STAGING_PREFIX}{self.table}"
        return self.table

    def read_csv_call(self) -> str:
        args = [sql_literal(str(self.csv_path)), "header = true"]
        if self.schema is not None:
            args.append(f"columns = {columns_struct(parse_column_schema(self.schema))}")
        return f"read_csv({', '.join(args)})"

    def view_sql(self) -> str:
        view = quote_identifier(self.view_name)
        return (
            f"DROP VIEW IF EXISTS {view};\n"
            f"CREATE VIEW {view} AS SELECT * FROM {self.read_csv_call()};"
        )

    def materialize_sql(self) -> str:
        table = quote_identifier(self.table)
        return (
            f"DROP TABLE IF EXISTS {table};\n"
            f"CREATE TABLE {table} AS SELECT * FROM {quote_identifier(self.view_name)};"
        )

    def to_sql(self) -> str:
        """Statements dropping and recreating this table's objects."""
        if self.preload:
            return f"{self.view_sql()}\n{self.materialize_sql()}"
        return self.view_sql()

    def created_objects(self) -> List[Tuple[str, str]]:
        """(name, kind) of every object to_sql() creates."""
        objects = [(self.view_name, VIEW)]
        if self.preload:
            objects.append((self.table, TABLE))
        return objects

    def conflicting_drops(self, existing: Dict[str, str]) -> List[str]:
        """Drops for existing objects of the wrong kind under our names.

        ``DROP VIEW`` refuses to drop a table and vice versa, which happens
        when preload is toggled against an existing database.

        Args:
            existing: Lower-cased object name -> kind (VIEW or BASE TABLE)
        """
        drops = []
        for name, kind in self.created_objects():
            current = existing.get(name.lower())
            if current is None or current == kind:
                continue
            keyword = "VIEW" if current == VIEW else "TABLE"
            drops.append(f"DROP {keyword} IF EXISTS {quote_identifier(name)};")
        return drops

    def __repr__(self) -> str:
        return f"TableDefinition({self.table!r}, preload={self.preload})"


def build_load_script(definitions: List[TableDefinition]) -> str:
    """Join the statements of all tables into one batch."""
    return "".join(definition.to_sql() + "\n" for definition in definitions)
