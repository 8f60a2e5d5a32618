"""Persisted client-side state that survives a restart."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from .models import CartLineItem, CartSnapshot

logger = logging.getLogger(__name__)

GUEST_CART_KEY = "guest_cart"
CART_MIRROR_KEY = "rudraksha_cart"
CURRENT_ORDER_KEY = "current_order"
AUTH_INVALID_KEY = "auth_invalid_at"


class LocalStore:
    """
    Key/value JSON files under one directory.

    Each key is a ``<key>.json`` file. Writes made through this instance are
    remembered so that ``changed_keys`` only reports writes made by someone
    else (another process sharing the directory).
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._seen: dict[str, Optional[tuple[int, int]]] = {}

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def _stamp(self, key: str) -> Optional[tuple[int, int]]:
        try:
            stat = self._path(key).stat()
            return stat.st_mtime_ns, stat.st_size
        except FileNotFoundError:
            return None

    def read(self, key: str) -> Any:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, "r") as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Ignoring unreadable {key} store: {e}")
            return None
        finally:
            self._seen[key] = self._stamp(key)

    def write(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(value, f, default=str)
        os.replace(tmp, path)
        self._seen[key] = self._stamp(key)

    def remove(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()
        self._seen[key] = None

    def changed_keys(self) -> list[str]:
        """Keys whose files were written or removed by another process since last seen."""
        changed = []
        keys = set(self._seen) | {p.stem for p in self.directory.glob("*.json")}
        for key in sorted(keys):
            current = self._stamp(key)
            if self._seen.get(key, None) != current:
                self._seen[key] = current
                changed.append(key)
        return changed

    # Cart-shaped records

    def _read_items(self, key: str) -> list[CartLineItem]:
        raw = self.read(key)
        if not isinstance(raw, list):
            return []
        items = []
        for record in raw:
            try:
                items.append(CartLineItem.model_validate(record))
            except ValidationError as e:
                logger.warning(f"Dropping invalid {key} record: {e}")
        return items

    def _write_items(self, key: str, items: list[CartLineItem]) -> None:
        self.write(key, [item.model_dump(mode="json") for item in items])

    def load_guest_cart(self) -> list[CartLineItem]:
        return self._read_items(GUEST_CART_KEY)

    def save_guest_cart(self, items: list[CartLineItem]) -> None:
        self._write_items(GUEST_CART_KEY, items)

    def clear_guest_cart(self) -> None:
        self.remove(GUEST_CART_KEY)

    def load_cart_mirror(self) -> CartSnapshot:
        return CartSnapshot(items=tuple(self._read_items(CART_MIRROR_KEY)))

    def save_cart_mirror(self, snapshot: CartSnapshot) -> None:
        self._write_items(CART_MIRROR_KEY, list(snapshot.items))

    def clear_cart_mirror(self) -> None:
        self.remove(CART_MIRROR_KEY)

    def save_current_order(self, order: dict[str, Any]) -> None:
        self.write(CURRENT_ORDER_KEY, order)

    def load_current_order(self) -> Optional[dict[str, Any]]:
        order = self.read(CURRENT_ORDER_KEY)
        return order if isinstance(order, dict) else None

    def clear_current_order(self) -> None:
        self.remove(CURRENT_ORDER_KEY)
