#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
memtree.py - volatile in-memory file system tree.

The tree is made of three node kinds:
- Directory: maps entry names to child nodes,
- File: holds a growable byte buffer, may be referenced by several
  directory entries (hard links),
- Symlink: holds an immutable target path which is never resolved here.

Every node operation runs under one reader/writer lock shared by the whole
tree: queries take it shared, mutations take it exclusive. Paths are resolved
by the caller through repeated Directory.lookup calls starting at the root.

Nothing is persisted; dropping the tree discards all of its content.

Copyright Â© 2025 Michal Morawiec <mmorawiec at gmail dot com>

Permission is hereby granted, free of charge, to any person obtaining a copy
of this software and associated documentation files (the "Software"), to deal
in the Software without restriction, including without limitation the rights
to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
copies of the Software, and to permit persons to whom the Software is
furnished to do so, subject to the following conditions:

The above copyright notice and this permission notice shall be included in all
copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
SOFTWARE.
"""

import errno
import itertools
import logging
import os
import stat
from dataclasses import dataclass
from enum import Enum
from time import time_ns
from typing import Iterable, NamedTuple
from rwlock import RWLock

log = logging.getLogger(__name__)

# Inode of the root directory, same value as pyfuse3.ROOT_INODE.
ROOT_INODE = 1


# region Errors

class MemFSError(Exception):
    """
    Base class of all tree operation errors.
    The errno attribute holds the POSIX error code reported to the kernel.
    """
    errno: int = errno.EIO


class NotFound(MemFSError):
    errno = errno.ENOENT


class AlreadyExists(MemFSError):
    errno = errno.EEXIST


class NotEmpty(MemFSError):
    errno = errno.ENOTEMPTY


class NotADirectory(MemFSError):
    errno = errno.ENOTDIR


class IsADirectory(MemFSError):
    errno = errno.EISDIR


class InvalidTarget(MemFSError):
    errno = errno.EPERM


class InvalidRange(MemFSError):
    errno = errno.EINVAL


class UnsupportedAttribute(MemFSError):
    """
    Raised by setattr for requested fields the node does not support.
    """
    errno = errno.ENOTSUP

    def __init__(self, fields: Iterable[str]) -> None:
        self.fields: tuple[str, ...] = tuple(sorted(fields))
        super().__init__(f'unsupported attribute(s): {", ".join(self.fields)}')

# endregion


# region Attributes

class NodeKind(Enum):
    """
    Node type; the value is the matching stat file type bits.
    """
    DIRECTORY = stat.S_IFDIR
    FILE = stat.S_IFREG
    SYMLINK = stat.S_IFLNK


@dataclass(frozen=True)
class Attributes:
    """
    Snapshot of node metadata taken under the tree lock.
    """
    inode: int
    mode: int
    ctime_ns: int
    mtime_ns: int
    size: int = 0
    nlink: int = 1

    @property
    def kind(self) -> NodeKind:
        return NodeKind(stat.S_IFMT(self.mode))


class DirEntry(NamedTuple):
    """
    One item of a directory listing.
    """
    name: str
    kind: NodeKind
    inode: int
    attr: Attributes
    node: 'Node'


class InodeAllocator:
    """
    Hands out strictly increasing inode numbers, freed numbers are never reused.
    Caller must hold the tree lock exclusively (or own the tree exclusively).
    """

    def __init__(self, start: int = ROOT_INODE) -> None:
        self._counter = itertools.count(start)

    def next(self) -> int:
        return next(self._counter)

# endregion


# region Nodes

class Node:
    """
    Common part of all tree nodes.
    """

    kind: NodeKind
    # Fields accepted by setattr.
    SETTABLE: frozenset[str] = frozenset({'mode', 'mtime'})

    def __init__(self, tree: 'MemTree', mode: int) -> None:
        self._tree = tree
        self.inode: int = tree.inodes.next()
        self._mode: int = self.kind.value | stat.S_IMODE(mode)
        now = time_ns()
        self._ctime_ns: int = now
        self._mtime_ns: int = now

    def __repr__(self) -> str:
        return f'<{type(self).__name__} inode={self.inode}>'

    def _size(self) -> int:
        return 0

    def _nlink(self) -> int:
        return 1

    def _attr(self) -> Attributes:
        # caller locks
        return Attributes(inode=self.inode,
                          mode=self._mode,
                          ctime_ns=self._ctime_ns,
                          mtime_ns=self._mtime_ns,
                          size=self._size(),
                          nlink=self._nlink())

    def attr(self) -> Attributes:
        with self._tree.lock.shared():
            return self._attr()

    def setattr(self, **changes: int) -> Attributes:
        """
        Update the given fields and return the resulting attributes.
        Note:
        - all fields are checked before anything is changed,
        - ownership fields are never supported, ownership is not stored.
        """
        with self._tree.lock.exclusive():
            unsupported = set(changes) - self.SETTABLE
            if unsupported:
                log.warning('%r: rejected setattr of %s', self, ', '.join(sorted(unsupported)))
                raise UnsupportedAttribute(unsupported)

            self._check_changes(changes)
            self._apply_changes(changes)
            return self._attr()

    def _check_changes(self, changes: dict[str, int]) -> None:
        pass

    def _apply_changes(self, changes: dict[str, int]) -> None:
        if 'mode' in changes:
            self._mode = stat.S_IFMT(self._mode) | stat.S_IMODE(changes['mode'])
        if 'mtime' in changes:
            self._mtime_ns = changes['mtime']


class Symlink(Node):
    kind = NodeKind.SYMLINK

    def __init__(self, tree: 'MemTree', target: str) -> None:
        super().__init__(tree, 0o444)
        self._target = target

    def _size(self) -> int:
        return len(os.fsencode(self._target))

    def readlink(self) -> str:
        with self._tree.lock.shared():
            return self._target


class File(Node):
    """
    Regular file with its content held in a byte buffer.
    """

    kind = NodeKind.FILE
    SETTABLE = frozenset({'size', 'mode', 'mtime'})

    def __init__(self, tree: 'MemTree', mode: int) -> None:
        super().__init__(tree, mode)
        self._content = bytearray()
        # Number of directory entries referencing this file.
        self._links = 1

    def _size(self) -> int:
        return len(self._content)

    def _nlink(self) -> int:
        return self._links

    def read(self, offset: int, size: int) -> bytes:
        """
        Return up to size bytes starting at offset.
        Reading past the end of the content returns the available bytes only.
        """
        with self._tree.lock.shared():
            if offset < 0 or size < 0 or offset > len(self._content):
                raise InvalidRange(f'cannot read {size} bytes at offset {offset} '
                                   f'of {len(self._content)} bytes')
            return bytes(self._content[offset:offset + size])

    def write(self, offset: int, data: bytes) -> int:
        """
        Overwrite content at offset with data and return the number of bytes written.
        A gap between the current end and offset is filled with zero bytes,
        content following the written range is kept.
        """
        with self._tree.lock.exclusive():
            if offset < 0:
                raise InvalidRange(f'cannot write at offset {offset}')

            pad = offset - len(self._content)
            if pad > 0:
                self._content.extend(bytes(pad))
            self._content[offset:offset + len(data)] = data
            self._mtime_ns = time_ns()
            return len(data)

    def _check_changes(self, changes: dict[str, int]) -> None:
        size = changes.get('size')
        if size is not None and size < 0:
            raise InvalidRange(f'cannot resize to {size} bytes')

    def _apply_changes(self, changes: dict[str, int]) -> None:
        size = changes.get('size')
        if size is not None:
            if size < len(self._content):
                del self._content[size:]
            else:
                self._content.extend(bytes(size - len(self._content)))
            self._mtime_ns = time_ns()
        # An explicit mtime wins over the one set by resizing.
        super()._apply_changes(changes)


class Directory(Node):
    """
    Directory mapping entry names to child nodes.
    Note:
    - entries have no defined order, list() results must be compared as sets,
    - directories and symlinks have exactly one entry, files may have several.
    """

    kind = NodeKind.DIRECTORY

    def __init__(self, tree: 'MemTree', mode: int) -> None:
        super().__init__(tree, mode)
        self._children: dict[str, Node] = {}
        self._parent: Directory | None = None

    def _nlink(self) -> int:
        return 2 + sum(1 for child in self._children.values() if isinstance(child, Directory))

    def _size(self) -> int:
        return len(self._children)

# region Directory helpers (caller locks)

    def _get_child(self, name: str) -> Node:
        child = self._children.get(name)
        if child is None:
            raise NotFound(f'{name!r} not found in {self!r}')
        return child

    def _check_free(self, name: str) -> None:
        if name in self._children:
            raise AlreadyExists(f'{name!r} already exists in {self!r}')

    def _insert(self, name: str, child: Node) -> None:
        self._children[name] = child
        if isinstance(child, Directory):
            child._parent = self
        self._mtime_ns = time_ns()
        log.debug('%r: added %r as %r', self, child, name)

    def _contains(self, node: 'Directory') -> bool:
        # True if self is node or lies anywhere below node.
        current: Directory | None = self
        while current is not None:
            if current is node:
                return True
            current = current._parent
        return False

    @staticmethod
    def _unlinked(node: Node) -> None:
        if isinstance(node, File):
            node._links -= 1

# endregion

    def lookup(self, name: str) -> Node:
        with self._tree.lock.shared():
            return self._get_child(name)

    def list(self) -> list[DirEntry]:
        """
        Return all entries, in no particular order.
        """
        with self._tree.lock.shared():
            return [DirEntry(name, child.kind, child.inode, child._attr(), child)
                    for name, child in self._children.items()]

    def mkdir(self, name: str, mode: int) -> 'Directory':
        with self._tree.lock.exclusive():
            self._check_free(name)
            child = Directory(self._tree, mode)
            self._insert(name, child)
            return child

    def create(self, name: str, mode: int) -> File:
        with self._tree.lock.exclusive():
            self._check_free(name)
            child = File(self._tree, mode)
            self._insert(name, child)
            return child

    def symlink(self, name: str, target: str) -> Symlink:
        with self._tree.lock.exclusive():
            self._check_free(name)
            child = Symlink(self._tree, target)
            self._insert(name, child)
            return child

    def link(self, name: str, target: Node) -> File:
        """
        Add entry name referencing the existing file target (hard link).
        """
        with self._tree.lock.exclusive():
            if not isinstance(target, File) or target._tree is not self._tree:
                raise InvalidTarget(f'cannot hard link {target!r}')
            self._check_free(name)
            target._links += 1
            self._insert(name, target)
            return target

    def remove(self, name: str, kind: NodeKind | None = None) -> None:
        """
        Remove entry name.
        Note:
        - if kind is given, the entry must be of that kind,
        - non-empty directories are never removed.
        """
        with self._tree.lock.exclusive():
            child = self._get_child(name)

            if kind is NodeKind.DIRECTORY and not isinstance(child, Directory):
                raise NotADirectory(f'{name!r} is not a directory')
            if kind is not None and kind is not NodeKind.DIRECTORY and isinstance(child, Directory):
                raise IsADirectory(f'{name!r} is a directory')
            if isinstance(child, Directory) and child._children:
                raise NotEmpty(f'{name!r} is not empty')

            del self._children[name]
            self._unlinked(child)
            if isinstance(child, Directory):
                child._parent = None
            self._mtime_ns = time_ns()
            log.debug('%r: removed %r (%r)', self, name, child)

    def rename(self, name: str, dest: Node, new_name: str) -> None:
        """
        Move entry name to new_name in dest directory.
        Note:
        - an existing dest entry is replaced whatever its kind and content,
        - a directory cannot be moved into its own subtree.
        """
        with self._tree.lock.exclusive():
            if not isinstance(dest, Directory) or dest._tree is not self._tree:
                raise NotADirectory(f'rename destination {dest!r} is not a directory')

            child = self._get_child(name)
            if dest is self and new_name == name:
                return
            if isinstance(child, Directory) and dest._contains(child):
                raise InvalidTarget(f'cannot move {name!r} into its own subtree')

            replaced = dest._children.get(new_name)
            del self._children[name]
            dest._children[new_name] = child
            if replaced is not None:
                self._unlinked(replaced)
                if isinstance(replaced, Directory):
                    replaced._parent = None
                log.debug('%r: replaced %r (%r)', dest, new_name, replaced)
            if isinstance(child, Directory):
                child._parent = dest

            now = time_ns()
            self._mtime_ns = now
            dest._mtime_ns = now
            log.debug('%r: moved %r to %r in %r', self, name, new_name, dest)

# endregion


class MemTree:
    """
    Node tree rooted at a directory with inode ROOT_INODE.
    """

    def __init__(self, root_mode: int = 0o777) -> None:
        self.lock = RWLock()
        self.inodes = InodeAllocator(ROOT_INODE)
        self.root = Directory(self, root_mode)

    def resolve(self, path: str) -> Node:
        """
        Walk a slash separated path from the root, one lookup per component.
        Symlinks are not followed. The walk is not atomic as a whole.
        """
        node: Node = self.root
        for name in (part for part in path.split('/') if part):
            if not isinstance(node, Directory):
                raise NotADirectory(f'{node!r} is not a directory')
            node = node.lookup(name)
        return node


def populate_demo(tree: MemTree) -> None:
    """
    Fill an empty tree with a small fixed sample:
        /bar/burried
        /hello
    """
    bar = tree.root.mkdir('bar', 0o777)
    tree.root.create('hello', 0o666).write(0, b'hello from fuse\n')
    bar.create('burried', 0o666).write(0, b'nothing to see here\n')
    log.info('Tree populated with demo content')
