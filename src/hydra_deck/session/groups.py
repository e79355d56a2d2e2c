"""Group hierarchy stored as flat records indexed by id."""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Iterator

from ..errors import AlreadyExistsError, InvalidStateError, NotFoundError
from .models import Group, generate_id


class GroupDeletePolicy(str, Enum):
    """What happens to a group's contents when it is deleted."""

    FORBID = "forbid"
    REASSIGN = "reassign"
    CASCADE = "cascade"


class GroupForest:
    """Arena of groups keyed by id.

    Parent links are plain ids; every reparent walks the ancestor chain so
    the hierarchy can never contain a cycle.
    """

    def __init__(self, groups: Iterable[Group] = ()) -> None:
        self._groups: dict[str, Group] = {}
        for group in groups:
            if group.id in self._groups:
                raise AlreadyExistsError(f"Duplicate group id '{group.id}'")
            self._groups[group.id] = group

    def __contains__(self, group_id: object) -> bool:
        return group_id in self._groups

    def __len__(self) -> int:
        return len(self._groups)

    def __iter__(self) -> Iterator[Group]:
        return iter(self._groups.values())

    def get(self, group_id: str) -> Group:
        try:
            return self._groups[group_id]
        except KeyError as exc:
            raise NotFoundError(f"Group '{group_id}' not found") from exc

    def children(self, parent_id: str | None) -> list[Group]:
        siblings = [group for group in self._groups.values() if group.parent_id == parent_id]
        return sorted(siblings, key=lambda group: group.display_order)

    def ordered(self) -> list[Group]:
        """Depth-first listing, siblings by ``display_order``."""

        result: list[Group] = []

        def visit(parent_id: str | None) -> None:
            for child in self.children(parent_id):
                result.append(child)
                visit(child.id)

        visit(None)
        return result

    def ancestors(self, group_id: str) -> list[str]:
        chain: list[str] = []
        current = self.get(group_id).parent_id
        while current is not None:
            if current in chain or current == group_id:
                raise InvalidStateError(f"Group '{group_id}' is part of a cycle")
            chain.append(current)
            current = self.get(current).parent_id
        return chain

    def descendants(self, group_id: str) -> list[str]:
        """Ids of every group below ``group_id`` (excluding itself)."""

        self.get(group_id)
        found: list[str] = []
        pending = [group_id]
        while pending:
            parent = pending.pop()
            for child in self.children(parent):
                found.append(child.id)
                pending.append(child.id)
        return found

    def subtree(self, group_id: str) -> list[str]:
        return [group_id, *self.descendants(group_id)]

    def validate(self) -> None:
        """Check every parent reference resolves and no cycle exists."""

        for group in self._groups.values():
            if group.parent_id is not None and group.parent_id not in self._groups:
                raise NotFoundError(
                    f"Group '{group.id}' references missing parent '{group.parent_id}'"
                )
        for group_id in self._groups:
            self.ancestors(group_id)

    def _check_name(self, name: str, parent_id: str | None, *, exclude: str | None = None) -> None:
        for sibling in self.children(parent_id):
            if sibling.id != exclude and sibling.name == name:
                raise AlreadyExistsError(f"Group '{name}' already exists at this level")

    def create(self, name: str, parent_id: str | None = None) -> Group:
        if parent_id is not None:
            self.get(parent_id)
        group_id = generate_id()
        while group_id in self._groups:
            group_id = generate_id()
        siblings = self.children(parent_id)
        order = max((group.display_order for group in siblings), default=-1) + 1
        group = Group(id=group_id, name=name, parent_id=parent_id, display_order=order)
        self._check_name(group.name, parent_id)
        self._groups[group.id] = group
        return group

    def rename(self, group_id: str, name: str) -> Group:
        group = self.get(group_id)
        updated = Group.model_validate({**group.model_dump(), "name": name})
        self._check_name(updated.name, group.parent_id, exclude=group_id)
        self._groups[group_id] = updated
        return updated

    def move(self, group_id: str, new_parent_id: str | None) -> Group:
        group = self.get(group_id)
        if new_parent_id is not None:
            self.get(new_parent_id)
            if new_parent_id == group_id or group_id in self.ancestors(new_parent_id):
                raise InvalidStateError(
                    f"Cannot move group '{group_id}' under its own descendant '{new_parent_id}'"
                )
        self._check_name(group.name, new_parent_id, exclude=group_id)
        siblings = self.children(new_parent_id)
        order = max((g.display_order for g in siblings if g.id != group_id), default=-1) + 1
        updated = group.model_copy(update={"parent_id": new_parent_id, "display_order": order})
        self._groups[group_id] = updated
        return updated

    def set_collapsed(self, group_id: str, collapsed: bool) -> Group:
        updated = self.get(group_id).model_copy(update={"collapsed": collapsed})
        self._groups[group_id] = updated
        return updated

    def remove(self, group_ids: Iterable[str]) -> None:
        for group_id in group_ids:
            self._groups.pop(group_id, None)


__all__ = ["GroupDeletePolicy", "GroupForest"]
