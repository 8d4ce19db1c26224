"""
Department tree assembly.

Remote platforms list departments flat, each referencing its parent by remote
id. The reconciler needs them as a rooted tree so that a parent is always
committed before any of its children.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from ldap_reconcile.models import Department

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class TreeNode:
    """A node of the department tree; ``department`` is None for the root and placeholders."""
    key: str
    department: Optional[Department] = None
    children: List['TreeNode'] = field(default_factory=list)
    parent: Optional['TreeNode'] = field(default=None, repr=False)

    @property
    def is_placeholder(self) -> bool:
        return self.department is None

    def attach(self, child: 'TreeNode'):
        """Make ``child`` the last child of this node, detaching it from any previous parent."""
        if child.parent is not None:
            child.parent.children.remove(child)
        child.parent = self
        self.children.append(child)

    def departments(self) -> List[Department]:
        """All departments below this node in pre-order."""
        return [node.department for node, _ in iter_preorder(self)]


def build_tree(root_key: str, departments: List[Department]) -> TreeNode:
    """
    Assemble departments into a single tree under a synthetic root.

    Each department is attached under the node whose key equals its parent key.
    A placeholder is created when the parent has not been seen yet, so the input
    order does not matter. Departments whose parent never turns up, that are
    their own parent, or that sit on a parent cycle are attached under the root.

    Args:
        root_key: Key of the synthetic root (``<flag>_1`` for source trees)
        departments: Normalized departments of one source

    Returns:
        The synthetic root node
    """
    root = TreeNode(key=root_key)
    nodes: Dict[str, TreeNode] = {}
    ordered: List[TreeNode] = []

    for dept in departments:
        key = dept.source_dept_id
        node = nodes.get(key)
        if node is None:
            node = TreeNode(key=key)
            nodes[key] = node
        elif not node.is_placeholder:
            logger.warning(f"Duplicate department {key} ({dept.name}); keeping first occurrence "
                           f"({node.department.name})")
            continue
        node.department = dept
        ordered.append(node)

        parent_key = dept.source_dept_parent_id
        if parent_key == key:
            logger.warning(f"Department {key} ({dept.name}) is its own parent; attaching under root")
            root.attach(node)
            continue

        parent = nodes.get(parent_key)
        if parent is None:
            parent = TreeNode(key=parent_key)
            nodes[parent_key] = parent
        parent.attach(node)

    # Children of parents that never turned up move under the root
    for key, node in nodes.items():
        if node.is_placeholder:
            for child in list(node.children):
                logger.debug(f"Parent {key} of department {child.key} not found; attaching under root")
                root.attach(child)

    _attach_unreachable(root, ordered)

    logger.debug(f"Built department tree {root_key} with {len(ordered)} departments")
    return root


def _attach_unreachable(root: TreeNode, ordered: List[TreeNode]):
    """Break parent cycles by moving the first unreachable node of each cycle under the root."""
    reachable = {id(node) for node, _ in iter_preorder(root)}
    for node in ordered:
        if id(node) in reachable:
            continue
        logger.warning(f"Department {node.key} ({node.department.name}) is on a parent cycle; "
                       f"attaching under root")
        root.attach(node)
        for descendant, _ in iter_preorder(node):
            reachable.add(id(descendant))
        reachable.add(id(node))


def iter_preorder(root: TreeNode) -> Iterator[Tuple[TreeNode, Optional[str]]]:
    """
    Walk the tree below ``root`` in pre-order without recursion.

    Yields ``(node, parent_key)`` pairs where ``parent_key`` is None for the
    direct children of ``root``. Siblings are visited in insertion order and a
    node is always yielded before any of its descendants.
    """
    worklist = deque((child, None) for child in root.children)
    while worklist:
        node, parent_key = worklist.popleft()
        yield node, parent_key
        # Children go to the front so the walk stays depth-first
        worklist.extendleft((child, node.key) for child in reversed(node.children))
