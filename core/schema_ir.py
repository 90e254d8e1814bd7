from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional

from core.type_codec import PortableType, to_json_text

Row = Dict[str, Any]

@dataclass
class ForeignKeyRef:
    """Target of a single-column foreign key"""
    table: str
    column: str

@dataclass
class Column:
    """Column definition in a snapshot"""
    name: str
    data_type: PortableType
    max_length: Optional[int] = None
    nullable: bool = True
    default: Optional[str] = None  # Raw expression text as reported by the catalog
    is_primary_key: bool = False
    is_unique: bool = False
    foreign_key: Optional[ForeignKeyRef] = None

@dataclass
class Table:
    """Table definition plus its captured rows"""
    name: str
    columns: List[Column] = field(default_factory=list)
    rows: List[Row] = field(default_factory=list)

    def column(self, name: str) -> Optional[Column]:
        return next((c for c in self.columns if c.name == name), None)

    @property
    def primary_key(self) -> List[str]:
        return [c.name for c in self.columns if c.is_primary_key]

    @property
    def referenced_tables(self) -> List[str]:
        return [c.foreign_key.table for c in self.columns if c.foreign_key]

@dataclass
class Index:
    name: str
    table: str
    column: str
    method: str = "btree"
    unique: bool = False

@dataclass
class View:
    name: str
    definition: str  # Passed through verbatim
    depends_on: List[str] = field(default_factory=list)

@dataclass
class Sequence:
    name: str
    start: int = 1
    min: int = 1
    max: int = 9223372036854775807
    increment_by: int = 1
    cycle: bool = False
    last_value: Optional[int] = None

@dataclass
class EnumType:
    name: str
    labels: List[str] = field(default_factory=list)  # Order defines comparison order

@dataclass
class DatabaseSnapshot:
    """Point-in-time structural and data capture of one schema"""
    name: str
    enums: List[EnumType] = field(default_factory=list)
    sequences: List[Sequence] = field(default_factory=list)
    tables: List[Table] = field(default_factory=list)
    indexes: List[Index] = field(default_factory=list)
    views: List[View] = field(default_factory=list)
    # Set when only one table was captured; shared objects are then kept
    table_filter: Optional[str] = None

    def table(self, name: str) -> Optional[Table]:
        return next((t for t in self.tables if t.name == name), None)

    @property
    def table_names(self) -> List[str]:
        return [t.name for t in self.tables]

    @property
    def row_count(self) -> int:
        return sum(len(t.rows) for t in self.tables)

    def to_dict(self, include_rows: bool = True) -> Dict[str, Any]:
        """Plain-data form used for debug dumps"""
        tables = []
        for table in self.tables:
            entry = {
                'name': table.name,
                'columns': [{
                    'name': c.name,
                    'type': c.data_type.to_dict(),
                    'max_length': c.max_length,
                    'nullable': c.nullable,
                    'default': c.default,
                    'primary_key': c.is_primary_key,
                    'unique': c.is_unique,
                    'foreign_key': {'table': c.foreign_key.table, 'column': c.foreign_key.column}
                                   if c.foreign_key else None,
                } for c in table.columns],
                'row_count': len(table.rows),
            }
            if include_rows:
                entry['rows'] = table.rows
            tables.append(entry)

        return {
            'name': self.name,
            'table_filter': self.table_filter,
            'enums': [{'name': e.name, 'labels': list(e.labels)} for e in self.enums],
            'sequences': [vars(s).copy() for s in self.sequences],
            'tables': tables,
            'indexes': [vars(i).copy() for i in self.indexes],
            'views': [{'name': v.name, 'definition': v.definition, 'depends_on': list(v.depends_on)}
                      for v in self.views],
        }

    def to_json(self, include_rows: bool = True) -> str:
        return to_json_text(self.to_dict(include_rows=include_rows))
