"""Generic traversal helpers for prompt graphs and loosely-typed JSON.

``visit`` is the single depth-first walker used for both node ancestry
(edges are input references) and JSON payload scans (edges are dict values
and list items).
"""
from typing import Any, Callable, Hashable, Iterable, Iterator, Optional, TypeVar

T = TypeVar("T")


def visit(
    roots: Iterable[T],
    children: Callable[[T], Iterable[T]],
    key: Callable[[T], Hashable] = lambda item: item,
) -> Iterator[T]:
    """Yield every item reachable from ``roots`` exactly once, in pre-order.

    Iterative, with a visited set keyed by ``key`` so cycles terminate.
    """
    visited: set[Hashable] = set()
    stack = list(roots)[::-1]
    while stack:
        item = stack.pop()
        marker = key(item)
        if marker in visited:
            continue
        visited.add(marker)
        yield item
        stack.extend(list(children(item))[::-1])


def input_node_ids(node: Any) -> list[str]:
    """Producer node ids referenced by a node's inputs.

    An input of the form ``[producer_id, slot]`` is an edge; anything else is
    a literal.
    """
    if not isinstance(node, dict):
        return []
    inputs = node.get("inputs")
    if not isinstance(inputs, dict):
        return []
    ids = []
    for value in inputs.values():
        if isinstance(value, list) and value and isinstance(value[0], str):
            ids.append(value[0])
    return ids


def ancestors(workflow: dict, start_id: str) -> Iterator[tuple[str, dict]]:
    """Yield (node_id, node) for ``start_id`` and everything upstream of it."""

    def producers(node_id: str) -> list[str]:
        return input_node_ids(workflow.get(node_id))

    for node_id in visit([start_id], producers):
        node = workflow.get(node_id)
        if isinstance(node, dict):
            yield node_id, node


def walk_json(
    value: Any,
    context: Optional[str] = None,
) -> Iterator[tuple[Optional[str], Any]]:
    """Yield (context, container) for every dict/list nested in ``value``.

    ``context`` is carried unchanged to every descendant; callers use it to
    tag what they find with the top-level key it was found under. Containers
    are deduplicated by identity.
    """
    def children(item: tuple[Optional[str], Any]) -> list[tuple[Optional[str], Any]]:
        ctx, container = item
        values = container.values() if isinstance(container, dict) else container
        return [(ctx, child) for child in values if isinstance(child, (dict, list))]

    if not isinstance(value, (dict, list)):
        return iter(())
    return visit([(context, value)], children, key=lambda item: id(item[1]))
