"""Fixtures building archives in memory for the extraction tests."""

from __future__ import annotations

import io
import os
import tarfile

import pytest


def tarinfo(name, type=tarfile.REGTYPE, mode=0o644, data=b"", linkname=""):
    info = tarfile.TarInfo(name)
    info.type = type
    info.mode = mode
    info.linkname = linkname
    info.size = len(data) if type == tarfile.REGTYPE else 0
    return info, data


def make_tar(members, compression=""):
    buf = io.BytesIO()
    mode = "w:" + compression if compression else "w"
    with tarfile.open(fileobj=buf, mode=mode) as tar:
        for info, data in members:
            tar.addfile(info, io.BytesIO(data) if info.isreg() else None)
    buf.seek(0)
    return buf


@pytest.fixture
def dest(tmp_path):
    path = tmp_path / "out"
    path.mkdir()
    return str(path)


@pytest.fixture
def read():
    def _read(*parts):
        with open(os.path.join(*parts), "rb") as f:
            return f.read()
    return _read
