#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
memfs.py - volatile in-memory file system using pyfuse3.

This program mounts a file system which allows to:
- create, read, write, truncate and remove files,
- create, list and remove folders,
- create hard links to files and symbolic links,
- rename and move entries between folders,
- change mode and modification time.
File system data is stored in memory (see memtree.py) and not persisted,
unmounting discards everything.
See also comments/notes for pyfuse3.Operations overriden methods
for additional details and limitations.

Based on "Single-file, Read-only File System" example from pyfuse3
(https://pyfuse3.readthedocs.io/en/latest/example.html).

Prerequisites:
- linux packages: fuse3 libfuse3-dev
- Python packages: pyfuse3 trio

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
import faulthandler
import itertools
import logging
import os
import signal
import stat
import sys
from argparse import ArgumentParser, Namespace
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional, Sequence, Tuple
import pyfuse3
import trio
from pyfuse3 import (EntryAttributes,
                     FileHandleT,
                     FileInfo,
                     FileNameT,
                     FlagT,
                     FUSEError,
                     InodeT,
                     ModeT,
                     readdir_reply,
                     ReaddirToken,
                     RequestContext,
                     ROOT_INODE,
                     SetattrFields,
                     StatvfsData)
from memtree import (Attributes,
                     Directory,
                     DirEntry,
                     File,
                     InvalidRange,
                     MemFSError,
                     MemTree,
                     Node,
                     NodeKind,
                     populate_demo,
                     Symlink)

log = logging.getLogger(__name__)


@contextmanager
def fuse_errors() -> Iterator[None]:
    """
    Report tree errors to the kernel as FUSE errors.
    """
    try:
        yield
    except MemFSError as e:
        log.debug('%s: %s', type(e).__name__, e)
        raise FUSEError(e.errno) from e


class MemFS(pyfuse3.Operations):
    """
    Implements pyfuse3 request handler methods on top of MemTree.
    """

    # File system name.
    NAME = 'memfs_pyfuse3'
    BLOCK_SIZE = 4096

    def __init__(self, tree: MemTree) -> None:
        super().__init__()

        self.tree = tree
        self._uid = os.getuid()
        self._gid = os.getgid()
        self._inode_data: dict[InodeT, MemFS.InodeData] = {}
        self._free_file_handle = itertools.count(0)
        self._file_handles: dict[FileHandleT, MemFS.FileHandleData] = {}
        # Root is known to the kernel without lookup and never forgotten.
        self._inode_data[ROOT_INODE] = self.InodeData(tree.root, 1)

# region Inode management

    @dataclass
    class InodeData:
        """
        Holds tree node known to the kernel and its lookup count.
        """
        node: Node
        lookup_count: int = 0

    @dataclass
    class FileHandleData:
        """
        Holds node of an open file or directory.
        For directories, entries hold the listing taken when it was opened.
        """
        node: Node
        entries: list[DirEntry] = field(default_factory=list)

        def next_entries(self, start_id: int) -> list[Tuple[int, DirEntry]]:
            return [(next_id, entry)
                    for next_id, entry in enumerate(self.entries[start_id:], start_id + 1)]

    def _count_lookup(self, node: Node) -> None:
        inode_data = self._inode_data.get(node.inode)
        if inode_data is None:
            inode_data = self._inode_data[node.inode] = self.InodeData(node)
        inode_data.lookup_count += 1

    def _remember(self, node: Node) -> Attributes:
        """
        Count node lookup by the kernel and return its attributes.
        """
        self._count_lookup(node)

        return node.attr()

    def _get_node(self, inode: InodeT) -> Node:
        inode_data = self._inode_data.get(inode)
        if inode_data is None:
            raise FUSEError(errno.ENOENT)

        return inode_data.node

    def _get_dir(self, inode: InodeT) -> Directory:
        node = self._get_node(inode)
        if not isinstance(node, Directory):
            raise FUSEError(errno.ENOTDIR)

        return node

    def _get_file_by_fh(self, fh: FileHandleT) -> File:
        fh_data = self._file_handles.get(fh)
        if fh_data is None:
            raise FUSEError(errno.EBADF)

        if not isinstance(fh_data.node, File):
            raise FUSEError(errno.EISDIR)

        return fh_data.node

    def _entry_attributes(self, attr: Attributes) -> EntryAttributes:
        entry = EntryAttributes()
        entry.st_ino = attr.inode
        # generation, entry_timeout, attr_timeout attributes are not used.
        # entry.generation = 0
        # entry.entry_timeout = 0
        # entry.attr_timeout = 0
        entry.st_mode = attr.mode
        entry.st_nlink = attr.nlink
        entry.st_uid = self._uid
        entry.st_gid = self._gid
        # st_rdev is used for device files (unsupported by this file system).
        entry.st_rdev = 0
        entry.st_size = attr.size
        entry.st_blksize = self.BLOCK_SIZE
        entry.st_blocks = -(-attr.size // 512)
        # Access time is not tracked, modification time is reported instead.
        entry.st_atime_ns = attr.mtime_ns
        entry.st_ctime_ns = attr.ctime_ns
        entry.st_mtime_ns = attr.mtime_ns
        # st_birthtime available under BSD and OS X only. It is zero on Linux.
        entry.st_birthtime_ns = 0
        return entry

    def _open(self, node: Node, entries: Optional[list[DirEntry]] = None) -> FileHandleT:
        fh: FileHandleT = next(self._free_file_handle)
        self._file_handles[fh] = self.FileHandleData(node, entries or [])

        return fh

    def _close(self, fh: FileHandleT) -> None:
        try:
            del self._file_handles[fh]
        except KeyError as e:
            raise FUSEError(errno.EBADF) from e

# endregion

# region pyfuse3.Operations

    async def create(
        self,
        parent_inode: InodeT,
        name: FileNameT,
        mode: ModeT,
        _flags: FlagT,
        ctx: RequestContext
    ) -> Tuple[FileInfo, EntryAttributes]:
        """
        pyfuse3.Operations.create override
        Note:
        - permissions are not checked
        - flags are ignored, files are always opened for reading and writing
        """
        with fuse_errors():
            node = self._get_dir(parent_inode).create(os.fsdecode(name), mode & ~ctx.umask)
            attr = self._remember(node)
        fh = self._open(node)

        return (FileInfo(fh=fh), self._entry_attributes(attr))

    async def flush(
        self,
        _fh: FileHandleT
    ) -> None:
        """
        pyfuse3.Operations.flush override
        Note:
        - data are written to memory immediately, nothing to flush
        """

    async def forget(
        self,
        inode_list: Sequence[Tuple[InodeT, int]]
    ) -> None:
        """
        pyfuse3.Operations.forget override
        Note:
        - node is kept in the tree, only the kernel reference is dropped
        """
        for inode, nlookup in inode_list:
            if inode == ROOT_INODE:
                continue
            inode_data = self._inode_data.get(inode)
            if inode_data is None:
                continue
            inode_data.lookup_count -= nlookup
            if inode_data.lookup_count <= 0:
                del self._inode_data[inode]

    async def fsync(
        self,
        _fh: FileHandleT,
        _datasync: bool
    ) -> None:
        """
        pyfuse3.Operations.fsync override
        Note:
        - there is no backing storage to sync
        """

    async def fsyncdir(
        self,
        _fh: FileHandleT,
        _datasync: bool
    ) -> None:
        """
        pyfuse3.Operations.fsyncdir override
        """

    async def getattr(
        self,
        inode: InodeT,
        _ctx: RequestContext
    ) -> EntryAttributes:
        """
        pyfuse3.Operations.getattr override
        Note:
        - permissions are not checked
        """
        return self._entry_attributes(self._get_node(inode).attr())

    async def link(
        self,
        inode: InodeT,
        new_parent_inode: InodeT,
        new_name: FileNameT,
        _ctx: RequestContext
    ) -> EntryAttributes:
        """
        pyfuse3.Operations.link override
        Note:
        - only regular files can be hard linked
        """
        with fuse_errors():
            node = self._get_dir(new_parent_inode).link(os.fsdecode(new_name), self._get_node(inode))
            return self._entry_attributes(self._remember(node))

    async def lookup(
        self,
        parent_inode: InodeT,
        name: FileNameT,
        _ctx: RequestContext
    ) -> EntryAttributes:
        """
        pyfuse3.Operations.lookup override
        Note:
        - permissions are not checked
        - '.' and '..' are resolved by the kernel and never looked up here
        """
        with fuse_errors():
            node = self._get_dir(parent_inode).lookup(os.fsdecode(name))
            return self._entry_attributes(self._remember(node))

    async def mkdir(
        self,
        parent_inode: InodeT,
        name: FileNameT,
        mode: ModeT,
        ctx: RequestContext
    ) -> EntryAttributes:
        """
        pyfuse3.Operations.mkdir override
        Note:
        - permissions are not checked
        """
        with fuse_errors():
            node = self._get_dir(parent_inode).mkdir(os.fsdecode(name), mode & ~ctx.umask)
            return self._entry_attributes(self._remember(node))

    async def mknod(
        self,
        parent_inode: InodeT,
        name: FileNameT,
        mode: ModeT,
        _rdev: int,
        ctx: RequestContext
    ) -> EntryAttributes:
        """
        pyfuse3.Operations.mknod override
        Note:
        - only regular files can be created, device files, fifos
          and sockets are not supported
        """
        if stat.S_IFMT(mode) not in (0, stat.S_IFREG):
            raise FUSEError(errno.EPERM)

        with fuse_errors():
            node = self._get_dir(parent_inode).create(os.fsdecode(name), mode & ~ctx.umask)
            return self._entry_attributes(self._remember(node))

    async def open(
        self,
        inode: InodeT,
        _flags: FlagT,
        _ctx: RequestContext
    ) -> FileInfo:
        """
        pyfuse3.Operations.open override
        Note:
        - permissions are not checked
        - O_TRUNC is applied by the kernel with a separate setattr request
        """
        node = self._get_node(inode)
        if not isinstance(node, File):
            raise FUSEError(errno.EISDIR)

        return FileInfo(fh=self._open(node))

    async def opendir(
        self,
        inode: InodeT,
        _ctx: RequestContext
    ) -> FileHandleT:
        """
        pyfuse3.Operations.opendir override
        Note:
        - permissions are not checked
        - directory entries are captured here, readdir serves this snapshot
        """
        node = self._get_dir(inode)
        return self._open(node, node.list())

    async def read(
        self,
        fh: FileHandleT,
        off: int,
        size: int
    ) -> bytes:
        """
        pyfuse3.Operations.read override
        Note:
        - reading past the end of file returns no data
        """
        try:
            return self._get_file_by_fh(fh).read(off, size)
        except InvalidRange:
            # File shrunk through another handle, nothing left to read.
            return b''

    async def readdir(
        self,
        fh: FileHandleT,
        start_id: int,
        token: ReaddirToken
    ) -> None:
        """
        pyfuse3.Operations.readdir override
        Note:
        - ensure correct multiple calls for single token
        - each accepted entry counts as one lookup, as pyfuse3 requires
        - entries order is arbitrary but stable for single directory handle
        """
        fh_data = self._file_handles.get(fh)
        if fh_data is None:
            raise FUSEError(errno.EBADF)

        for next_id, entry in fh_data.next_entries(start_id):
            if not readdir_reply(token, os.fsencode(entry.name), self._entry_attributes(entry.attr), next_id):
                break
            # Accepted entry is known to the kernel like after lookup.
            self._count_lookup(entry.node)

    async def readlink(
        self,
        inode: InodeT,
        _ctx: RequestContext
    ) -> FileNameT:
        """
        pyfuse3.Operations.readlink override
        """
        node = self._get_node(inode)
        if not isinstance(node, Symlink):
            raise FUSEError(errno.EINVAL)

        return FileNameT(os.fsencode(node.readlink()))

    async def release(
        self,
        fh: FileHandleT
    ) -> None:
        """
        pyfuse3.Operations.release override
        """
        self._close(fh)

    async def releasedir(
        self,
        fh: FileHandleT
    ) -> None:
        """
        pyfuse3.Operations.releasedir override
        """
        self._close(fh)

    async def rename(
        self,
        parent_inode_old: InodeT,
        name_old: FileNameT,
        parent_inode_new: InodeT,
        name_new: FileNameT,
        flags: FlagT,
        _ctx: RequestContext
    ) -> None:
        """
        pyfuse3.Operations.rename override
        Note:
        - RENAME_EXCHANGE and RENAME_NOREPLACE are not supported
        - existing target is replaced regardless of its type and content
        """
        if flags:
            raise FUSEError(errno.EINVAL)

        with fuse_errors():
            self._get_dir(parent_inode_old).rename(
                os.fsdecode(name_old), self._get_node(parent_inode_new), os.fsdecode(name_new))

    async def rmdir(
        self,
        parent_inode: InodeT,
        name: FileNameT,
        _ctx: RequestContext
    ) -> None:
        """
        pyfuse3.Operations.rmdir override
        Note:
        - permissions are not checked
        """
        with fuse_errors():
            self._get_dir(parent_inode).remove(os.fsdecode(name), NodeKind.DIRECTORY)

    async def setattr(
        self,
        inode: InodeT,
        attr: EntryAttributes,
        fields: SetattrFields,
        _fh: Optional[FileHandleT],
        _ctx: RequestContext
    ) -> EntryAttributes:
        """
        pyfuse3.Operations.setattr override
        Note:
        - permissions are not checked
        - access and change times are not tracked, their updates are ignored
        - ownership changes are rejected with ENOTSUP
        """
        changes: dict[str, int] = {}
        if fields.update_mode:
            changes['mode'] = attr.st_mode
        if fields.update_mtime:
            changes['mtime'] = attr.st_mtime_ns
        if fields.update_size:
            changes['size'] = attr.st_size
        if fields.update_uid:
            changes['uid'] = attr.st_uid
        if fields.update_gid:
            changes['gid'] = attr.st_gid

        with fuse_errors():
            return self._entry_attributes(self._get_node(inode).setattr(**changes))

    async def statfs(
        self,
        _ctx: RequestContext
    ) -> StatvfsData:
        """
        pyfuse3.Operations.statfs override
        Note:
        - memory is not limited, block and inode counts are reported as zero
        """
        statvfs = StatvfsData()
        statvfs.f_bsize = self.BLOCK_SIZE
        statvfs.f_frsize = self.BLOCK_SIZE
        statvfs.f_blocks = 0
        statvfs.f_bfree = 0
        statvfs.f_bavail = 0
        statvfs.f_files = 0
        statvfs.f_ffree = 0
        statvfs.f_favail = 0
        statvfs.f_namemax = 255
        return statvfs

    async def symlink(
        self,
        parent_inode: InodeT,
        name: FileNameT,
        target: FileNameT,
        _ctx: RequestContext
    ) -> EntryAttributes:
        """
        pyfuse3.Operations.symlink override
        Note:
        - target is stored as is, it is neither checked nor resolved
        """
        with fuse_errors():
            node = self._get_dir(parent_inode).symlink(os.fsdecode(name), os.fsdecode(target))
            return self._entry_attributes(self._remember(node))

    async def unlink(
        self,
        parent_inode: InodeT,
        name: FileNameT,
        _ctx: RequestContext
    ) -> None:
        """
        pyfuse3.Operations.unlink override
        Note:
        - permissions are not checked
        - removed file stays readable through the handles still open
        """
        with fuse_errors():
            self._get_dir(parent_inode).remove(os.fsdecode(name), NodeKind.FILE)

    async def write(
        self,
        fh: FileHandleT,
        off: int,
        buf: bytes
    ) -> int:
        """
        pyfuse3.Operations.write override
        Note:
        - writing past the end of file fills the gap with zero bytes
        """
        with fuse_errors():
            return self._get_file_by_fh(fh).write(off, buf)

# endregion


# region app

def init_logging(debug=False) -> None:
    formatter = logging.Formatter('%(asctime)s.%(msecs)03d %(threadName)s: '
                                  '[%(name)s] %(message)s', datefmt="%Y-%m-%d %H:%M:%S")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)

    if debug:
        faulthandler.enable()
        handler.setLevel(logging.DEBUG)
        root_logger.setLevel(logging.DEBUG)
    else:
        handler.setLevel(logging.INFO)
        root_logger.setLevel(logging.INFO)


def parse_args(args: Optional[Sequence[str]] = None) -> Namespace:
    parser = ArgumentParser(description='Mount a volatile in-memory file system.')
    parser.add_argument('mount_dir', type=str,
                        help='File system mount directory')
    parser.add_argument('--mode', type=lambda value: int(value, 8), default=0o777,
                        help='Root directory permissions in octal (default: %(default)o)')
    parser.add_argument('--fsname', type=str, default='mem',
                        help='File system name shown in mount table (default: %(default)s)')
    parser.add_argument('--populate', action='store_true', default=False,
                        help='Create sample files and folders after mount')
    parser.add_argument('--debug', action='store_true', default=False,
                        help='Enable debugging output')
    parser.add_argument('--debug-fuse', action='store_true', default=False,
                        help='Enable FUSE debugging output')
    return parser.parse_args(args)


async def serve() -> None:
    """
    Run pyfuse3 request loop until unmounted or interrupted by a signal.
    """
    with trio.open_signal_receiver(signal.SIGINT, signal.SIGTERM, signal.SIGHUP) as signals:
        async with trio.open_nursery() as nursery:
            async def stop_on_signal() -> None:
                async for signum in signals:
                    log.info('Received %s, unmounting', signal.Signals(signum).name)
                    nursery.cancel_scope.cancel()
                    return

            nursery.start_soon(stop_on_signal)
            await pyfuse3.main()
            # Unmounted externally (e.g. fusermount -u).
            nursery.cancel_scope.cancel()


def main() -> None:
    args = parse_args()
    init_logging(args.debug)

    mount_dir = Path(args.mount_dir)
    if not mount_dir.is_dir():
        log.error('Mount directory %s is not directory', str(mount_dir))
        sys.exit(1)

    tree = MemTree(args.mode)
    if args.populate:
        populate_demo(tree)

    fuse_options = set(pyfuse3.default_options)
    fuse_options.add(f'fsname={args.fsname}')
    fuse_options.add(f'subtype={MemFS.NAME}')
    if args.debug_fuse:
        fuse_options.add('debug')

    pyfuse3.init(MemFS(tree), str(mount_dir), fuse_options)
    log.info('Mounted %s at %s', MemFS.NAME, str(mount_dir))

    try:
        trio.run(serve)
    finally:
        pyfuse3.close()
        log.info('Unmounted %s', str(mount_dir))


if __name__ == '__main__':
    main()

# endregion
