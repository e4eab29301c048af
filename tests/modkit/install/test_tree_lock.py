# tests/modkit/install/test_tree_lock.py
import os

import pytest

from modkit.core.errors import TreeBusyError
from modkit.install.tree import ModTree, TreeLock
from modkit.manifest.model import ModIdentity


def test_tree_layout(tmp_path):
    tree = ModTree.at(tmp_path / "game")
    assert tree.slotFor(ModIdentity("Core", "Lib")) == tree.root / "mods" / "Core-Lib"
    assert tree.ledgerPath.parent == tree.stateDir
    tree.ensure()
    assert tree.modsRoot.is_dir() and tree.stagingRoot.is_dir() and tree.trashRoot.is_dir()


def test_second_lock_in_process_fails_fast(tree):
    with TreeLock(tree):
        assert tree.lockPath.read_text().strip() == str(os.getpid())
        with pytest.raises(TreeBusyError):
            TreeLock(ModTree.at(tree.root)).acquire()
    assert not tree.lockPath.exists()

    # Released: can be taken again
    with TreeLock(tree):
        pass


def test_foreign_lock_file_blocks(tree):
    tree.stateDir.mkdir(parents=True)
    tree.lockPath.write_text("12345\n")

    with pytest.raises(TreeBusyError):
        TreeLock(tree).acquire()

    # The failed attempt does not leave the root registered in this process
    tree.lockPath.unlink()
    with TreeLock(tree):
        pass


def test_different_trees_do_not_block_each_other(tmp_path):
    with TreeLock(ModTree.at(tmp_path / "one")), TreeLock(ModTree.at(tmp_path / "two")):
        pass


def test_release_is_idempotent(tree):
    lock = TreeLock(tree)
    lock.release()
    lock.acquire()
    lock.release()
    lock.release()
    assert not tree.lockPath.exists()
