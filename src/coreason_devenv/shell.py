# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv

"""Shell scripts run inside environments.

Every interpolated value goes through ``shlex.quote``. File contents are never
passed through these scripts; they travel binary-safe via the drivers'
``write_files``.
"""

import re
import shlex

TIMEOUT_EXIT_CODE = 124
HEAD_MARKER = "HEAD="

_HEAD_RE = re.compile(rf"^{HEAD_MARKER}([0-9a-f]{{40}})\s*$", re.MULTILINE)


def with_timeout(command: str, seconds: float, kill_after: float = 5.0) -> str:
    """Wrap a command in coreutils ``timeout``.

    ``timeout`` runs the command in its own process group and signals the
    whole group, so grandchildren die with it. Exit code 124 means timed out.
    """
    return f"timeout -k {kill_after:g} {max(seconds, 1):g} sh -c {shlex.quote(command)}"


def clone_script(
    workdir: str,
    source_url: str,
    origin_url: str,
    branch: str,
    default_branch: str,
) -> str:
    """Check out ``branch`` in ``workdir`` from ``source_url``.

    Reuses an existing checkout when present. A branch that does not exist on
    the remote yet is created from ``default_branch``. Afterwards ``origin``
    points at ``origin_url`` and the script prints ``HEAD=<sha>``.
    """
    w, src, origin = shlex.quote(workdir), shlex.quote(source_url), shlex.quote(origin_url)
    b, d = shlex.quote(branch), shlex.quote(default_branch)
    return "\n".join(
        [
            "set -e",
            "git config --global --add safe.directory '*' || true",
            f"mkdir -p {w}",
            f"cd {w}",
            "if [ -d .git ]; then",
            f"  git remote set-url origin {src}",
            "else",
            "  git init -q",
            f"  git remote add origin {src}",
            "fi",
            "git fetch --prune origin",
            f"if git rev-parse --verify --quiet refs/remotes/origin/{b} >/dev/null; then",
            f"  git checkout -q -f -B {b} origin/{b}",
            "else",
            f"  echo {shlex.quote(f'Branch {branch} not found on remote, creating it from {default_branch}')}",
            f"  git checkout -q -f -B {b} origin/{d}",
            "fi",
            "git reset -q --hard",
            f"git remote set-url origin {origin}",
            f"echo {HEAD_MARKER}$(git rev-parse HEAD)",
        ]
    )


def refresh_script(workdir: str, branch: str, origin_url: str | None = None) -> str:
    """Fetch and hard-reset a restored checkout to the remote branch head."""
    w, b = shlex.quote(workdir), shlex.quote(branch)
    lines = ["set -e", f"cd {w}"]
    if origin_url:
        lines.append(f"git remote set-url origin {shlex.quote(origin_url)}")
    lines += [
        "git fetch --prune origin",
        f"if git rev-parse --verify --quiet refs/remotes/origin/{b} >/dev/null; then",
        f"  git checkout -q -f -B {b} origin/{b}",
        f"  git reset -q --hard origin/{b}",
        "fi",
        f"echo {HEAD_MARKER}$(git rev-parse HEAD)",
    ]
    return "\n".join(lines)


def head_script(workdir: str) -> str:
    return f"cd {shlex.quote(workdir)} && echo {HEAD_MARKER}$(git rev-parse HEAD)"


def parse_head(output: str) -> str | None:
    matches = _HEAD_RE.findall(output)
    return matches[-1] if matches else None


def dev_server_script(workdir: str, command: str, log_path: str, port: int) -> str:
    """Launch the dev server detached, appending to ``log_path``."""
    log = shlex.quote(log_path)
    return (
        f"cd {shlex.quote(workdir)} && : > {log} && "
        f"PORT={port} nohup sh -c {shlex.quote(command)} >> {log} 2>&1 < /dev/null & "
        "echo started"
    )


def probe_script(port: int, timeout: float = 2.0) -> str:
    """Exit 0 once anything answers HTTP on ``port``."""
    url = f"http://127.0.0.1:{port}/"
    t = f"{max(timeout, 1):g}"
    node = (
        f"require('http').get('{url}', () => process.exit(0))"
        ".on('error', () => process.exit(1)).setTimeout("
        f"{int(max(timeout, 1) * 1000)}, () => process.exit(1))"
    )
    return (
        f"if command -v curl >/dev/null 2>&1; then curl -s -o /dev/null --max-time {t} {url}; "
        f"elif command -v wget >/dev/null 2>&1; then wget -q -T {t} -O /dev/null {url}; "
        f"else node -e {shlex.quote(node)}; fi"
    )


def tail_script(log_path: str, lines: int) -> str:
    return f"tail -n {int(lines)} {shlex.quote(log_path)} 2>/dev/null || true"
