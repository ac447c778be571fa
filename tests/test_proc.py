"""Tests for _proc module."""

from pathlib import Path

import pytest

from drmstat._proc import (
    children_of,
    list_pids,
    parse_stat,
    process_tree,
    read_cmdline,
    read_stat,
)


def _stat_line(pid: int, comm: str, utime: int, stime: int, threads: int) -> str:
    # pid (comm) state ppid pgrp session tty tpgid flags minflt cminflt majflt
    # cmajflt utime stime cutime cstime priority nice num_threads ...
    return (
        f"{pid} ({comm}) S 1 {pid} {pid} 0 -1 4194560 100 0 0 0 "
        f"{utime} {stime} 0 0 20 0 {threads} 0 12345 1000000 200 18446744073709551615\n"
    )


def _make_proc(root: Path, pid: int, comm: str = "glxgears", children: str = "") -> None:
    base = root / str(pid)
    (base / "task" / str(pid)).mkdir(parents=True)
    (base / "stat").write_text(_stat_line(pid, comm, 150, 50, 4))
    (base / "cmdline").write_bytes(f"{comm}\0--fullscreen\0".encode())
    (base / "task" / str(pid) / "children").write_text(children)


class TestParseStat:
    def test_fields(self) -> None:
        st = parse_stat(100, _stat_line(100, "glxgears", 150, 50, 4))
        assert st.pid == 100
        assert st.comm == "glxgears"
        assert st.cpu_ticks == 200
        assert st.threads == 4

    def test_comm_with_spaces_and_parens(self) -> None:
        st = parse_stat(7, _stat_line(7, "Web Content (x)", 1, 2, 30))
        assert st.comm == "Web Content (x)"
        assert st.cpu_ticks == 3
        assert st.threads == 30

    def test_malformed(self) -> None:
        with pytest.raises(ValueError):
            parse_stat(1, "garbage")

    def test_short(self) -> None:
        with pytest.raises(ValueError):
            parse_stat(1, "1 (init) S 0 1")


class TestProcTree:
    def test_read_stat_and_cmdline(self, tmp_path: Path) -> None:
        _make_proc(tmp_path, 100)
        assert read_stat(100, root=str(tmp_path)).comm == "glxgears"
        assert read_cmdline(100, root=str(tmp_path)) == "glxgears --fullscreen"
        assert read_cmdline(999, root=str(tmp_path)) == ""

    def test_list_pids(self, tmp_path: Path) -> None:
        _make_proc(tmp_path, 20)
        _make_proc(tmp_path, 3)
        (tmp_path / "self").mkdir()
        assert list_pids(root=str(tmp_path)) == [3, 20]

    def test_children_and_tree(self, tmp_path: Path) -> None:
        _make_proc(tmp_path, 100, children="101 102")
        _make_proc(tmp_path, 101, children="103")
        _make_proc(tmp_path, 102)
        _make_proc(tmp_path, 103)
        _make_proc(tmp_path, 200)
        assert sorted(children_of(100, root=str(tmp_path))) == [101, 102]
        assert process_tree(100, root=str(tmp_path)) == {100, 101, 102, 103}

    def test_tree_of_exited_root_is_empty(self, tmp_path: Path) -> None:
        assert process_tree(100, root=str(tmp_path)) == set()
