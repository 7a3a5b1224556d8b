from report_jobs.tables.base import Table, TableNotFound, TableStore
from report_jobs.tables.csv_store import CsvTableStore

__all__ = [
    "CsvTableStore",
    "Table",
    "TableNotFound",
    "TableStore",
]
