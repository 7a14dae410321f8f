"""
Record table used by the inventory, treasury and reimbursement pages.

The table is a view over one page of rows the route already filtered,
sorted and paginated. It knows how to lay out columns, count pages,
track which rows are checked and how an inline-edited cell behaves.
Persisting anything is left to the callbacks supplied by the route.
"""
import logging
import math
import threading
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import urlencode

from cachetools import LRUCache

logger = logging.getLogger(__name__)

PLACEHOLDER = "-"


@dataclass
class ColumnDef:
    key: str
    header: str
    accessor: str | Callable[[Any], Any] | None = None
    cell: Callable[[Any, Any], Any] | None = None
    editable: bool = False
    css_class: str = ""

    def raw_value(self, row):
        accessor = self.accessor or self.key
        if callable(accessor):
            return accessor(row)
        if isinstance(row, dict):
            return row.get(accessor)
        return getattr(row, accessor, None)


def cell_value(row, column: ColumnDef):
    """Accessor result, or None when the accessor fails."""
    try:
        return column.raw_value(row)
    except Exception as e:
        logger.warning(f"Column {column.key!r} accessor failed: {e}")
        return None


def render_cell(row, column: ColumnDef):
    """Display value for a cell; never raises."""
    value = cell_value(row, column)
    if column.cell is not None:
        try:
            rendered = column.cell(value, row)
        except Exception as e:
            logger.warning(f"Column {column.key!r} renderer failed: {e}")
            return PLACEHOLDER
        return PLACEHOLDER if rendered is None else rendered
    if value is None or value == "":
        return PLACEHOLDER
    return value


def parse_visible_columns(param, allowed, default):
    """
    Visible column keys from the comma-joined cols query parameter.

    Unknown keys are dropped and the result follows the order of allowed.
    An absent or empty parameter falls back to default.
    """
    if param:
        requested = {key.strip() for key in param.split(",")}
    else:
        requested = set(default)
    return [key for key in allowed if key in requested]


def toggle_column_param(visible, key, allowed):
    """cols parameter value after showing/hiding key."""
    keys = set(visible)
    if key in keys:
        keys.discard(key)
    elif key in allowed:
        keys.add(key)
    return ",".join(k for k in allowed if k in keys)


class RecordTable:
    def __init__(self, columns, rows, total_count, page, page_size, get_row_id,
                 enable_selection=False, enable_delete=False, filters=None, actions=None,
                 is_loading=False, on_page_change=None, on_selection_change=None,
                 on_delete_selected=None, table_id="record-table", edit_url=None):
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self.columns = list(columns)
        self.rows = list(rows)
        self.total_count = max(total_count, 0)
        self.page = max(1, page)
        self.page_size = page_size
        self.get_row_id = get_row_id
        self.enable_selection = enable_selection
        self.enable_delete = enable_delete and enable_selection
        self.filters = filters
        self.actions = actions
        self.is_loading = is_loading
        self.on_page_change = on_page_change
        self.on_selection_change = on_selection_change
        self.on_delete_selected = on_delete_selected
        self.table_id = table_id
        self.edit_url = edit_url
        self._selected = set()

    # Pagination

    @property
    def page_count(self) -> int:
        return max(1, math.ceil(self.total_count / self.page_size))

    @property
    def has_previous(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page < self.page_count

    @property
    def first_index(self) -> int:
        if not self.rows:
            return 0
        return (self.page - 1) * self.page_size + 1

    @property
    def last_index(self) -> int:
        return self.first_index + len(self.rows) - 1 if self.rows else 0

    def request_page(self, page) -> bool:
        """Ask the caller for another page; out-of-range or same-page requests are ignored."""
        if page < 1 or page > self.page_count or page == self.page:
            return False
        if self.on_page_change is not None:
            self.on_page_change(page)
        return True

    def page_url(self, page, args=None) -> str:
        params = dict(args or {})
        params["page"] = str(page)
        return "?" + urlencode(params)

    # Rows & cells

    def row_id(self, row) -> str:
        return str(self.get_row_id(row))

    @property
    def row_ids(self):
        return [self.row_id(row) for row in self.rows]

    @property
    def is_empty(self) -> bool:
        return not self.rows and not self.is_loading

    def cells(self, row):
        return [(column, render_cell(row, column)) for column in self.columns]

    def editor(self, row, column):
        """Inline editor for a cell, holding the stored value rather than the rendered label."""
        return EditableCell(cell_value(row, column), on_save=None, disabled=not column.editable)

    # Selection

    @property
    def selected_ids(self):
        return [row_id for row_id in self.row_ids if row_id in self._selected]

    @property
    def all_selected(self) -> bool:
        return bool(self.rows) and len(self._selected) == len(self.rows)

    def is_selected(self, row_id) -> bool:
        return str(row_id) in self._selected

    def toggle(self, row_id):
        row_id = str(row_id)
        if not self.enable_selection or row_id not in self.row_ids:
            return
        if row_id in self._selected:
            self._selected.discard(row_id)
        else:
            self._selected.add(row_id)
        self._selection_changed()

    def select_all(self):
        if not self.enable_selection:
            return
        self._selected = set(self.row_ids)
        self._selection_changed()

    def select(self, ids):
        """Replace the selection; identities not on this page are dropped."""
        if not self.enable_selection:
            return
        on_page = set(self.row_ids)
        self._selected = {str(row_id) for row_id in ids} & on_page
        self._selection_changed()

    def clear(self):
        self._selected = set()
        self._selection_changed()

    def reload(self, rows, total_count=None, page=None):
        """New data from the server; the selection never survives a reload."""
        self.rows = list(rows)
        if total_count is not None:
            self.total_count = max(total_count, 0)
        if page is not None:
            self.page = max(1, page)
        self.clear()

    def delete_selected(self):
        ids = self.selected_ids
        if not self.enable_delete or not ids:
            return []
        if self.on_delete_selected is not None:
            self.on_delete_selected(ids)
        return ids

    def _selection_changed(self):
        if self.on_selection_change is not None:
            self.on_selection_change(self.selected_ids)


class EditableCell:
    """
    Click-to-edit text cell.

    Enter and blur commit, Escape restores the last committed value. The
    save callback only runs when the value actually changed.
    """

    def __init__(self, value, on_save, disabled=False):
        self.value = "" if value is None else str(value)
        self.pending_value = self.value
        self.is_editing = False
        self.disabled = disabled
        self.on_save = on_save

    @property
    def display(self) -> str:
        return self.value or PLACEHOLDER

    def begin_edit(self) -> bool:
        if self.disabled:
            return False
        self.pending_value = self.value
        self.is_editing = True
        return True

    def change(self, text):
        if self.is_editing:
            self.pending_value = text

    def key(self, key):
        if key == "Enter":
            self.commit()
        elif key == "Escape":
            self.cancel()

    def blur(self):
        self.commit()

    def commit(self):
        if not self.is_editing:
            return
        self.is_editing = False
        if self.pending_value != self.value:
            self.value = self.pending_value
            if self.on_save is not None:
                self.on_save(self.value)

    def cancel(self):
        self.pending_value = self.value
        self.is_editing = False


class InlineEditLedger:
    """
    Server-side record of the newest inline edit per cell and client.

    A browser numbers its own edits with rev, so numbers are only compared
    between edits from the same client: a late request never overwrites
    that client's newer edit. Edits from different clients apply in arrival
    order. The ledger keeps at most maxsize entries, least recently used
    first out.
    """

    def __init__(self, maxsize=4096):
        self._latest = LRUCache(maxsize=maxsize)
        self._lock = threading.Lock()

    def stage(self, target, client=None) -> int:
        """Next generation for target, for callers that number edits themselves."""
        with self._lock:
            return self._latest.get((client, target), 0) + 1

    def accept(self, target, generation=None, client=None) -> bool:
        key = (client, target)
        with self._lock:
            newest = self._latest.get(key, 0)
            if generation is None:
                generation = newest + 1
            elif generation <= newest:
                return False
            self._latest[key] = generation
            return True

    def latest(self, target, client=None):
        with self._lock:
            return self._latest.get((client, target))
