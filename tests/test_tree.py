#!/usr/bin/env python3
"""
Unit tests for department tree assembly and traversal.
"""

import itertools
import os
import sys
import unittest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_reconcile.models import Department
from ldap_reconcile.tree import TreeNode, build_tree, iter_preorder


def dept(remote_id, parent_id, name=None):
    return Department(name=name or f"D{remote_id}", source_dept_id=f"hr_{remote_id}",
                      source_dept_parent_id=f"hr_{parent_id}")


def walk(root):
    return [(node.key, parent_key) for node, parent_key in iter_preorder(root)]


class TestBuildTree(unittest.TestCase):
    """Test cases for build_tree."""

    def test_children_of_root_key(self):
        root = build_tree('hr_1', [dept(2, 1), dept(3, 1), dept(4, 2)])

        self.assertEqual(walk(root), [('hr_2', None), ('hr_4', 'hr_2'), ('hr_3', None)])

    def test_child_listed_before_parent(self):
        departments = [dept(10, 1, 'Eng'), dept(1, 0, 'Root')]
        root = build_tree('hr_1', departments)

        self.assertEqual(walk(root), [('hr_1', None), ('hr_10', 'hr_1')])

    def test_every_order_yields_same_tree(self):
        departments = [dept(2, 1), dept(3, 2), dept(4, 2), dept(5, 3), dept(6, 1)]
        expected = None
        for permutation in itertools.permutations(departments):
            root = build_tree('hr_1', list(permutation))
            keys = walk(root)
            self.assertEqual(len(keys), len(departments))
            self.assertEqual({key for key, _ in keys}, {d.source_dept_id for d in departments})

            positions = {key: i for i, (key, _) in enumerate(keys)}
            for key, parent_key in keys:
                if parent_key is not None:
                    self.assertLess(positions[parent_key], positions[key])

            parents = dict(keys)
            if expected is None:
                expected = parents
            self.assertEqual(parents, expected)

    def test_orphan_attaches_under_root(self):
        root = build_tree('hr_1', [dept(2, 1), dept(7, 99)])

        self.assertEqual(walk(root), [('hr_2', None), ('hr_7', None)])

    def test_self_parent_attaches_under_root(self):
        root = build_tree('hr_1', [dept(5, 5)])
        self.assertEqual(walk(root), [('hr_5', None)])

    def test_cycle_is_broken(self):
        root = build_tree('hr_1', [dept(2, 1), dept(3, 4), dept(4, 3)])

        keys = walk(root)
        self.assertEqual(sorted(key for key, _ in keys), ['hr_2', 'hr_3', 'hr_4'])
        self.assertIn(('hr_3', None), keys)
        self.assertIn(('hr_4', 'hr_3'), keys)

    def test_duplicate_keeps_first(self):
        root = build_tree('hr_1', [dept(2, 1, 'First'), dept(2, 1, 'Second')])

        nodes = [node for node, _ in iter_preorder(root)]
        self.assertEqual(len(nodes), 1)
        self.assertEqual(nodes[0].department.name, 'First')

    def test_empty_input(self):
        root = build_tree('hr_1', [])
        self.assertEqual(walk(root), [])
        self.assertTrue(root.is_placeholder)

    def test_departments_in_preorder(self):
        root = build_tree('hr_1', [dept(3, 2), dept(2, 1)])
        self.assertEqual([d.source_dept_id for d in root.departments()], ['hr_2', 'hr_3'])


class TestTreeNode(unittest.TestCase):

    def test_attach_moves_child(self):
        first = TreeNode('a')
        second = TreeNode('b')
        child = TreeNode('c')

        first.attach(child)
        second.attach(child)

        self.assertEqual(first.children, [])
        self.assertEqual(second.children, [child])
        self.assertIs(child.parent, second)

    def test_deep_tree_does_not_recurse(self):
        departments = [dept(i, i - 1) for i in range(2, 5002)]
        root = build_tree('hr_1', departments)

        keys = walk(root)
        self.assertEqual(len(keys), 5000)
        self.assertEqual(keys[-1], ('hr_5001', 'hr_5000'))


if __name__ == '__main__':
    unittest.main()
