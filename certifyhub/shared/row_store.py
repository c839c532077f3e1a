from __future__ import annotations

from typing import Iterable, Iterator

from .fields import BulkRow


class RowStore:
    """Ordered, editable grid of bulk rows. Never empty."""

    def __init__(
        self,
        rows: Iterable[BulkRow] | None = None,
        field_ids: Iterable[str] | None = None,
    ):
        self.field_ids = frozenset(field_ids) if field_ids is not None else None
        self._rows: list[BulkRow] = list(rows or [])
        if not self._rows:
            self._rows.append(BulkRow())

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[BulkRow]:
        return iter(self._rows)

    def __getitem__(self, index: int) -> BulkRow:
        return self._rows[index]

    @property
    def rows(self) -> list[BulkRow]:
        return list(self._rows)

    def add_row(self) -> BulkRow:
        row = BulkRow()
        self._rows.append(row)
        return row

    def delete_row(self, index: int) -> bool:
        """Remove the row at ``index``; the last remaining row is kept."""
        self._check_index(index)
        if len(self._rows) == 1:
            return False
        del self._rows[index]
        return True

    def set_value(self, index: int, field_id: str, value: str) -> None:
        self._check_index(index)
        if self.field_ids is not None and field_id not in self.field_ids:
            raise KeyError(f"Unknown field id {field_id!r}.")
        self._rows[index].values[field_id] = value

    def set_recipient_email(self, index: int, email: str | None) -> None:
        self._check_index(index)
        self._rows[index].recipient_email = (email or "").strip() or None

    def replace(self, rows: Iterable[BulkRow]) -> None:
        new_rows = list(rows)
        if not new_rows:
            raise ValueError("Row store requires at least one row.")
        self._rows = new_rows

    def to_list(self) -> list[dict]:
        return [row.to_dict() for row in self._rows]

    def _check_index(self, index: int) -> None:
        if index < 0 or index >= len(self._rows):
            raise IndexError(f"Row index {index} out of range.")
