"""Process information from /proc: CPU ticks, names and process trees."""

from __future__ import annotations

import os
from collections import deque
from dataclasses import dataclass

PROC_ROOT = "/proc"

CLK_TCK = os.sysconf("SC_CLK_TCK")


@dataclass(frozen=True)
class ProcStat:
    """The subset of ``/proc/<pid>/stat`` the sampler needs."""

    pid: int
    comm: str
    cpu_ticks: int   # utime + stime
    threads: int


def parse_stat(pid: int, text: str) -> ProcStat:
    """Parse a ``/proc/<pid>/stat`` line. Raises ValueError when malformed."""
    lpar = text.find("(")
    rpar = text.rfind(")")
    if lpar < 0 or rpar < lpar:
        raise ValueError(f"malformed stat for pid {pid}")
    comm = text[lpar + 1 : rpar]
    # fields after the comm start at "state" (field 3 in proc(5))
    fields = text[rpar + 2 :].split()
    if len(fields) < 18:
        raise ValueError(f"short stat for pid {pid}")
    utime = int(fields[11])
    stime = int(fields[12])
    threads = int(fields[17])
    return ProcStat(pid=pid, comm=comm, cpu_ticks=utime + stime, threads=threads)


def read_stat(pid: int, *, root: str = PROC_ROOT) -> ProcStat:
    with open(os.path.join(root, str(pid), "stat")) as f:
        return parse_stat(pid, f.read())


def read_cmdline(pid: int, *, root: str = PROC_ROOT) -> str:
    try:
        with open(os.path.join(root, str(pid), "cmdline"), "rb") as f:
            raw = f.read()
    except OSError:
        return ""
    return raw.rstrip(b"\0").replace(b"\0", b" ").decode(errors="replace")


def pid_exists(pid: int, *, root: str = PROC_ROOT) -> bool:
    return os.path.isdir(os.path.join(root, str(pid)))


def list_pids(*, root: str = PROC_ROOT) -> list[int]:
    return sorted(int(e) for e in os.listdir(root) if e.isdigit())


def children_of(pid: int, *, root: str = PROC_ROOT) -> list[int]:
    """Direct children of ``pid`` across all of its threads."""
    task_dir = os.path.join(root, str(pid), "task")
    kids: list[int] = []
    try:
        tids = os.listdir(task_dir)
    except OSError:
        return kids
    for tid in tids:
        try:
            with open(os.path.join(task_dir, tid, "children")) as f:
                kids.extend(int(c) for c in f.read().split())
        except (OSError, ValueError):
            continue
    return kids


def process_tree(root_pid: int, *, root: str = PROC_ROOT) -> set[int]:
    """``root_pid`` and all of its live descendants, breadth first.

    Returns an empty set when ``root_pid`` itself is gone.
    """
    if not pid_exists(root_pid, root=root):
        return set()
    seen = {root_pid}
    queue = deque([root_pid])
    while queue:
        for kid in children_of(queue.popleft(), root=root):
            if kid not in seen:
                seen.add(kid)
                queue.append(kid)
    return seen
