"""Helpers over ``sexpdata`` trees.

Nodes are plain lists whose first element is a ``Symbol``; quoted KiCad
strings come back as ``str`` and bare words as ``Symbol``. A ``Symbol``
never compares equal to a ``str``, so compare through ``str()``, ``head()``
or ``words()``.
"""

from __future__ import annotations

from typing import Iterator

import sexpdata
from sexpdata import Symbol

INDENT = "  "


def parse(text: str) -> list:
    return sexpdata.loads(text, nil=None, true=None)


def sym(name: str) -> Symbol:
    return Symbol(name)


def num(value: float) -> int | float:
    """Normalise a coordinate so repeated writes print identically."""
    value = round(float(value), 6)
    if value == int(value):
        return int(value)
    return value


def head(node) -> str | None:
    if isinstance(node, list) and node and isinstance(node[0], (str, Symbol)):
        return str(node[0])
    return None


def words(node: list | None) -> list[str]:
    """The atoms after the head, as plain strings."""
    if node is None:
        return []
    return [str(atom) for atom in node[1:] if not isinstance(atom, list)]


def children(node: list, name: str) -> Iterator[list]:
    for child in node[1:]:
        if head(child) == name:
            yield child


def find(node: list, name: str) -> list | None:
    return next(children(node, name), None)


def index_of(node: list, name: str) -> int | None:
    for index, child in enumerate(node):
        if index and head(child) == name:
            return index
    return None


def remove(node: list, name: str) -> int:
    """Remove every direct child called ``name``; returns how many went."""
    before = len(node)
    node[:] = [child for i, child in enumerate(node) if i == 0 or head(child) != name]
    return before - len(node)


def set_child(node: list, name: str, *values, after: tuple[str, ...] = ()) -> list:
    """Replace the first ``(name ...)`` child, or insert one.

    A new child goes right after the last child whose head is in ``after``,
    or at the end when none is present.
    """
    replacement = [sym(name), *values]
    index = index_of(node, name)
    if index is not None:
        node[index] = replacement
        return replacement
    position = len(node)
    for i, child in enumerate(node):
        if i and head(child) in after:
            position = i + 1
    node.insert(position, replacement)
    return replacement


def node_uuid(node: list) -> str | None:
    for name in ("uuid", "tstamp"):
        child = find(node, name)
        if child is not None and len(child) > 1:
            return str(child[1])
    return None


def _atom(value) -> str:
    return sexpdata.dumps(value)


def format_document(node) -> str:
    """Serialise a tree with one nested list per line.

    Lists made only of atoms stay on a single line. The output is a pure
    function of the tree, which keeps regenerated files stable.
    """
    return _format(node, 0) + "\n"


def _format(node, depth: int) -> str:
    if not isinstance(node, list):
        return _atom(node)
    if not any(isinstance(child, list) for child in node):
        return "(" + " ".join(_atom(child) for child in node) + ")"

    atoms = []
    rest_start = len(node)
    for i, child in enumerate(node):
        if isinstance(child, list):
            rest_start = i
            break
        atoms.append(_atom(child))

    pad = INDENT * (depth + 1)
    lines = ["(" + " ".join(atoms)]
    for child in node[rest_start:]:
        lines.append(pad + _format(child, depth + 1))
    return "\n".join(lines) + "\n" + INDENT * depth + ")"
