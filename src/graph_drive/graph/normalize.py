"""Delta-specific normalization of drive item batches.

These quirks only show up in delta responses, not in single-item or
list-children responses. The pipeline runs in a fixed order:

1. Percent-decode item names (shared items sometimes arrive as ``my%20file.txt``).
2. Drop packages (OneNote notebooks): compound objects, not plain files.
3. Clear hashes on deleted items: tombstones can carry stale or bogus hashes.
4. Deduplicate by item ID, keeping the last occurrence at its own position.
5. Within each parent, move deletions ahead of non-deletions, so a
   rename-then-recreate never shows two live entries with the same name.
"""

from __future__ import annotations

import dataclasses
import logging
from collections import defaultdict
from urllib.parse import unquote

from graph_drive.graph.models import Item

logger = logging.getLogger(__name__)

_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


def normalize_delta_items(items: list[Item]) -> list[Item]:
    """Run the full normalization pipeline over one delta batch."""
    items = decode_names(items)
    items = filter_packages(items)
    items = clear_deleted_hashes(items)
    items = deduplicate_items(items)
    items = reorder_deletions(items)
    return items


def _path_unescape(name: str) -> str:
    """Percent-decode ``name``, raising ValueError on a malformed escape.

    ``urllib.parse.unquote`` silently leaves malformed sequences alone, so
    the escapes are validated first.
    """
    index = name.find("%")
    while index != -1:
        escape = name[index + 1 : index + 3]
        if len(escape) != 2 or not set(escape) <= _HEX_DIGITS:
            raise ValueError(f"invalid percent-encoding at offset {index}")
        index = name.find("%", index + 3)
    return unquote(name, errors="strict")


def decode_names(items: list[Item]) -> list[Item]:
    """Percent-decode item names, keeping the original when decoding fails."""
    decoded = 0
    result: list[Item] = []
    for item in items:
        try:
            name = _path_unescape(item.name)
        except ValueError as exc:  # UnicodeDecodeError is a ValueError too
            logger.debug(
                "[decode_names] failed to decode item name, keeping original;"
                " item_id:%s;name:%s;error:%s",
                item.id,
                item.name,
                exc,
            )
            result.append(item)
            continue

        if name != item.name:
            logger.debug(
                "[decode_names] decoded item name; item_id:%s;encoded:%s;decoded:%s",
                item.id,
                item.name,
                name,
            )
            item = dataclasses.replace(item, name=name)
            decoded += 1
        result.append(item)

    if decoded:
        logger.info("[decode_names] decoded item names in delta batch; decoded_count:%d", decoded)
    return result


def filter_packages(items: list[Item]) -> list[Item]:
    """Remove package items entirely."""
    result = []
    for item in items:
        if item.is_package:
            logger.debug(
                "[filter_packages] filtering out package item; item_id:%s;name:%s",
                item.id,
                item.name,
            )
            continue
        result.append(item)

    filtered = len(items) - len(result)
    if filtered:
        logger.info(
            "[filter_packages] filtered package items from delta batch;"
            " filtered_count:%d;remaining_count:%d",
            filtered,
            len(result),
        )
    return result


def clear_deleted_hashes(items: list[Item]) -> list[Item]:
    """Blank every content hash on deleted items; live items are untouched."""
    cleared = 0
    result = []
    for item in items:
        if item.is_deleted and item.has_hashes:
            logger.debug(
                "[clear_deleted_hashes] clearing hashes on deleted item; item_id:%s;name:%s",
                item.id,
                item.name,
            )
            item = dataclasses.replace(item, quick_xor_hash="", sha1_hash="", sha256_hash="")
            cleared += 1
        result.append(item)

    if cleared:
        logger.info(
            "[clear_deleted_hashes] cleared hashes on deleted items; cleared_count:%d", cleared
        )
    return result


def deduplicate_items(items: list[Item]) -> list[Item]:
    """Keep only the last occurrence of each item ID.

    The API can report an item more than once when it changes while the
    batch is being produced; only its final state matters. Kept items stay
    in their original relative order, and a duplicated item lands where
    it last appeared.
    """
    last_index = {item.id: index for index, item in enumerate(items)}
    kept = [item for index, item in enumerate(items) if last_index[item.id] == index]

    for index, item in enumerate(items):
        if last_index[item.id] != index:
            logger.debug(
                "[deduplicate_items] dropping earlier occurrence; item_id:%s;name:%s",
                item.id,
                item.name,
            )

    dupes = len(items) - len(kept)
    if dupes:
        logger.info(
            "[deduplicate_items] deduplicated items in delta batch;"
            " duplicate_count:%d;remaining_count:%d",
            dupes,
            len(kept),
        )
    return kept


def reorder_deletions(items: list[Item]) -> list[Item]:
    """Put deletions before non-deletions among items sharing a parent.

    The slots held by a parent's items are kept, then refilled with that
    parent's deleted items followed by its live ones, each group in its
    original order. Items of other parents keep their exact slots, but a
    moved item can change order relative to them.
    """
    positions: dict[str, list[int]] = defaultdict(list)
    for index, item in enumerate(items):
        positions[item.parent_id].append(index)

    result = list(items)
    moved = 0
    for parent_id, slots in positions.items():
        group = [items[i] for i in slots]
        ordered = [i for i in group if i.is_deleted] + [i for i in group if not i.is_deleted]
        changed = sum(1 for before, after in zip(group, ordered) if before is not after)
        if changed:
            logger.debug(
                "[reorder_deletions] moved deletions ahead of live items; parent_id:%s;moved:%d",
                parent_id,
                changed,
            )
            moved += changed
        for slot, item in zip(slots, ordered):
            result[slot] = item

    if moved:
        logger.info(
            "[reorder_deletions] reordered deletions before creations in delta batch;"
            " moved_count:%d",
            moved,
        )
    return result
