"""Shape text into Telegram-safe message chunks."""

import re

TELEGRAM_MAX_LENGTH = 4096
GROUP_SEPARATOR = "\n\n"
PAGE_INDICATOR_RESERVE = 16  # Room for "\n\n(999/999)"

_TITLE_PATTERN = re.compile(r"^#{1,6}[ \t]+(.+?)[ \t]*#*[ \t]*$", re.MULTILINE)
_TAG_PATTERN = re.compile(r"<(/?)(\w+)(?:\s[^>]*)?>")


def replace_markdown_titles(text: str) -> str:
    """Turn markdown ``# Title`` lines into Telegram ``<b>Title</b>`` elements."""
    return _TITLE_PATTERN.sub(r"<b>\1</b>", text)


def _avoid_tag_split(text: str, pos: int) -> int:
    """Move a split position back so it does not land inside ``<...>``."""
    last_open = text.rfind("<", 0, pos)
    if last_open != -1:
        last_close = text.rfind(">", last_open, pos)
        if last_close == -1:
            return last_open
    return pos


def _find_split_point(text: str, budget: int) -> int:
    """Last newline within budget, else a hard cut; never inside a tag.

    Returns 0 when every cut within budget would land inside a tag.
    """
    pos = text.rfind("\n", 0, budget + 1)
    if pos > 0:
        pos = _avoid_tag_split(text, pos)
        if pos > 0:
            return pos
    return _avoid_tag_split(text, budget)


def _tag_safe_cut(text: str, max_length: int) -> int:
    """Hard cut within max_length that keeps tag markup intact."""
    pos = _avoid_tag_split(text, max_length)
    if pos > 0:
        return pos
    # The text opens with a tag longer than max_length
    end = text.find(">")
    return end + 1 if end != -1 else max_length


def _balance_html_tags(chunk: str) -> tuple[str, str]:
    """Close tags left open in chunk, return the tags to reopen afterwards."""
    open_tags: list[tuple[str, str]] = []  # (tag_name, full_opening_tag)

    for match in _TAG_PATTERN.finditer(chunk):
        is_closing = match.group(1) == "/"
        tag_name = match.group(2)

        if is_closing:
            for i in range(len(open_tags) - 1, -1, -1):
                if open_tags[i][0] == tag_name:
                    open_tags.pop(i)
                    break
        else:
            open_tags.append((tag_name, match.group(0)))

    if not open_tags:
        return chunk, ""

    closing = "".join(f"</{tag}>" for tag, _ in reversed(open_tags))
    reopening = "".join(full_tag for _, full_tag in open_tags)
    return chunk + closing, reopening


def split_text(text: str, max_length: int = TELEGRAM_MAX_LENGTH) -> list[str]:
    """Split HTML text into pieces that each fit ``max_length``.

    Styling tags left open at a cut are closed at the end of the piece and
    reopened at the start of the next one, so the pieces together contain
    more markup than ``text``. When the tags alone leave no room for
    content, the piece is cut at a tag boundary without rebalancing.
    """
    if max_length <= 0:
        raise ValueError("max_length must be positive")
    if len(text) <= max_length:
        return [text] if text else []

    pieces: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= max_length:
            pieces.append(remaining)
            break

        budget = max_length
        while True:
            split_at = _find_split_point(remaining, budget)
            piece, reopen = _balance_html_tags(remaining[:split_at])
            if split_at > len(reopen) and len(piece) <= max_length:
                break
            budget = min(budget - 1, budget - (len(piece) - max_length))
            if split_at <= len(reopen) or budget < 1:
                split_at = _tag_safe_cut(remaining, max_length)
                piece, reopen = remaining[:split_at], ""
                break

        rest = remaining[split_at:]
        if rest.startswith("\n"):
            rest = rest[1:]
        pieces.append(piece)
        remaining = reopen + rest if rest else ""

    return [p for p in pieces if p]


def split_plain_text(text: str, max_length: int = TELEGRAM_MAX_LENGTH) -> list[str]:
    """Split text without markup at a newline, then a space, then a hard cut.

    A newline at the cut is consumed; everything else arrives unchanged.
    """
    if max_length <= 0:
        raise ValueError("max_length must be positive")
    if len(text) <= max_length:
        return [text] if text else []

    pieces: list[str] = []
    remaining = text
    min_pos = max_length // 4

    while remaining:
        if len(remaining) <= max_length:
            pieces.append(remaining)
            break

        pos = remaining.rfind("\n", 0, max_length + 1)
        if pos > min_pos:
            pieces.append(remaining[:pos])
            remaining = remaining[pos + 1:]
            continue

        pos = remaining.rfind(" ", 0, max_length)
        if pos > min_pos:
            pos += 1  # Keep the space with the piece it ends
        else:
            pos = max_length
        pieces.append(remaining[:pos])
        remaining = remaining[pos:]

    return [p for p in pieces if p]


def split_into_groups(
    segments: list[str],
    max_length: int = TELEGRAM_MAX_LENGTH,
    separator: str = GROUP_SEPARATOR,
) -> list[list[str]]:
    """Pack segments into ordered groups whose joined length fits ``max_length``.

    Segments are normalized first and empty ones are dropped. Packing is
    greedy: a segment joins the current group only if the group, the
    separator and the segment still fit. A segment longer than the limit is
    split into several pieces that are packed like ordinary segments.
    """
    groups: list[list[str]] = []
    current: list[str] = []
    current_len = 0

    for segment in segments:
        normalized = replace_markdown_titles(segment).strip()
        if not normalized:
            continue

        for piece in split_text(normalized, max_length):
            added = len(piece) if not current else len(separator) + len(piece)
            if current and current_len + added > max_length:
                groups.append(current)
                current, current_len = [], 0
                added = len(piece)
            current.append(piece)
            current_len += added

    if current:
        groups.append(current)
    return groups


def render_groups(groups: list[list[str]], separator: str = GROUP_SEPARATOR) -> list[str]:
    return [separator.join(group) for group in groups]


def paginate(chunks: list[str]) -> list[str]:
    """Append ``(i/n)`` to each chunk when there is more than one."""
    if len(chunks) <= 1:
        return list(chunks)
    total = len(chunks)
    return [f"{chunk}\n\n({i}/{total})" for i, chunk in enumerate(chunks, start=1)]
