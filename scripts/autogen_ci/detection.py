from __future__ import annotations


def classify_failure(text: str) -> str:
    lower = text.lower()
    docker_markers = [
        "cannot connect to the docker daemon",
        "is the docker daemon running",
        "no such service",
        "failed to solve",
        "error response from daemon",
    ]
    disk_markers = [
        "no space left on device",
        "disk quota exceeded",
    ]
    network_markers = [
        "could not resolve host",
        "network is unreachable",
        "connection timed out",
        "temporary failure in name resolution",
        "connection reset by peer",
    ]
    compile_markers = [
        "failed to compile",
        "compilation failed",
        "could not compile",
        "error[e",
        "compilererror",
        "solc",
    ]
    script_markers = [
        "command not found",
        "permission denied",
        "no such file or directory",
        "traceback",
        "panicked at",
    ]
    if any(marker in lower for marker in docker_markers):
        return "docker"
    if any(marker in lower for marker in disk_markers):
        return "disk"
    if any(marker in lower for marker in network_markers):
        return "network"
    if any(marker in lower for marker in compile_markers):
        return "compile"
    if any(marker in lower for marker in script_markers):
        return "script"
    return "unknown"
