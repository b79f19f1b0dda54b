from typing import Optional


def normalize(text: Optional[str]) -> str:
    """Canonical form of program output used for judging.

    CRLF becomes LF, trailing whitespace is stripped from every line and
    trailing blank lines are dropped. ``None`` and ``''`` both give ``''``.
    """
    if not text:
        return ''
    lines = [line.rstrip() for line in text.replace('\r\n', '\n').split('\n')]
    while lines and not lines[-1]:
        lines.pop()
    return '\n'.join(lines)


def outputs_match(actual: Optional[str], expected: Optional[str]) -> bool:
    return normalize(actual) == normalize(expected)
