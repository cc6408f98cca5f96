"""
Cursor-relative Markdown editing.

The pure helpers take a buffer and a :class:`Selection` and return an
:class:`Edit` (new buffer + where the cursor/selection should land).  The
:class:`Editor` wraps them into a session object that owns the buffer, the
write/preview tab and the change callback.

Selection restoration is *deferred*: after an edit the host still shows the
old text, so the new range is queued with :meth:`Editor.after_render` and only
applied when the host calls :meth:`Editor.rendered`.
"""

from dataclasses import dataclass
from typing import Callable

from inkwell.render import render

PLACEHOLDER = "text"
WRITE, PREVIEW = "write", "preview"
TABS = (WRITE, PREVIEW)

LINK_URL = "https://example.com"
HR = "\n\n---\n\n"
QUOTE_EXAMPLE = "\n> Important quote or highlighted text goes here\n"
LIST_KINDS = ("unordered", "ordered")
LIST_EXAMPLES = {
    "unordered": "- Item 1\n- Item 2\n- Item 3",
    "ordered": "1. Item 1\n2. Item 2\n3. Item 3",
}
HEADING_LEVELS = (1, 2, 3)


@dataclass(frozen=True)
class Selection:
    start: int
    end: int

    @classmethod
    def caret(cls, pos: int) -> "Selection":
        return cls(pos, pos)

    @property
    def empty(self) -> bool:
        return self.start == self.end

    def check(self, buffer: str) -> "Selection":
        """Raise ``ValueError`` unless ``0 <= start <= end <= len(buffer)``."""
        if not 0 <= self.start <= self.end <= len(buffer):
            raise ValueError(
                f"selection {self.start}:{self.end} outside buffer of {len(buffer)}"
            )
        return self

    def clamp(self, buffer: str) -> "Selection":
        n = len(buffer)
        start = min(max(self.start, 0), n)
        return Selection(start, min(max(self.end, start), n))


@dataclass(frozen=True)
class Edit:
    buffer: str
    selection: Selection


def selected_text(buffer: str, sel: Selection) -> str:
    return buffer[sel.start : sel.end]


def insert_at(buffer: str, sel: Selection, snippet: str) -> Edit:
    """Replace the selection with *snippet*; the caret lands right after it."""
    sel.check(buffer)
    new = buffer[: sel.start] + snippet + buffer[sel.end :]
    return Edit(new, Selection.caret(sel.start + len(snippet)))


def wrap_selection(buffer: str, sel: Selection, before: str, after: str) -> Edit:
    """
    Surround the selection with *before* / *after*.

    With nothing selected, ``before + "text" + after`` is inserted and the
    placeholder itself is returned as the new selection so typing replaces it.
    """
    picked = selected_text(buffer, sel.check(buffer))
    if picked:
        return insert_at(buffer, sel, before + picked + after)
    edit = insert_at(buffer, sel, before + PLACEHOLDER + after)
    start = sel.start + len(before)
    return Edit(edit.buffer, Selection(start, start + len(PLACEHOLDER)))


def insert_heading(buffer: str, sel: Selection, level: int) -> Edit:
    if level not in HEADING_LEVELS:
        raise ValueError(f"heading level must be one of {HEADING_LEVELS}")
    return wrap_selection(buffer, sel, "\n" + "#" * level + " ", "")


def _prefix_lines(text: str, prefix: Callable[[int], str]) -> str:
    return "\n".join(prefix(i) + ln for i, ln in enumerate(text.split("\n")))


def insert_list(buffer: str, sel: Selection, kind: str) -> Edit:
    """Prefix every selected line, or drop in a three-item example list."""
    if kind not in LIST_KINDS:
        raise ValueError(f"list kind must be one of {LIST_KINDS}")
    picked = selected_text(buffer, sel.check(buffer))
    if not picked:
        return insert_at(buffer, sel, LIST_EXAMPLES[kind])
    if kind == "ordered":
        return insert_at(buffer, sel, _prefix_lines(picked, lambda i: f"{i + 1}. "))
    return insert_at(buffer, sel, _prefix_lines(picked, lambda i: "- "))


def insert_quote(buffer: str, sel: Selection) -> Edit:
    picked = selected_text(buffer, sel.check(buffer))
    if not picked:
        return insert_at(buffer, sel, QUOTE_EXAMPLE)
    return insert_at(buffer, sel, _prefix_lines(picked, lambda i: "> "))


def insert_horizontal_rule(buffer: str, sel: Selection) -> Edit:
    return insert_at(buffer, sel, HR)


def insert_image(buffer: str, sel: Selection, src: str, alt: str = "Image") -> Edit:
    """Insert a Markdown image reference for an ingested payload or URL."""
    return insert_at(buffer, sel, f"![{alt or 'Image'}]({src})")


# name → (buffer, selection, **kw) -> Edit
OPERATIONS: dict[str, Callable[..., Edit]] = {
    "bold": lambda b, s: wrap_selection(b, s, "**", "**"),
    "italic": lambda b, s: wrap_selection(b, s, "*", "*"),
    "heading": lambda b, s, level=1: insert_heading(b, s, int(level)),
    "bulleted-list": lambda b, s: insert_list(b, s, "unordered"),
    "numbered-list": lambda b, s: insert_list(b, s, "ordered"),
    "inline-code": lambda b, s: wrap_selection(b, s, "`", "`"),
    "code-block": lambda b, s: wrap_selection(b, s, "\n```\n", "\n```"),
    "blockquote": insert_quote,
    "link": lambda b, s: wrap_selection(b, s, "[", f"]({LINK_URL})"),
    "horizontal-rule": insert_horizontal_rule,
    "image": insert_image,
}


def apply(op: str, buffer: str, sel: Selection, **kw) -> Edit:
    """Run the toolbar operation called *op*."""
    try:
        fn = OPERATIONS[op]
    except KeyError:
        raise ValueError(f"unknown formatting operation: {op!r}") from None
    return fn(buffer, sel, **kw)


class Editor:
    """
    One editing session for one document field.

    ``on_change`` receives a copy of the buffer after every mutation made by
    the user or a toolbar action.  ``set_content`` is the one-way sync from
    the host: it overwrites local edits and does not call ``on_change``.
    """

    def __init__(self, content: str | None = "", on_change=None):
        self.buffer = content or ""
        self.on_change = on_change
        self.active_tab = WRITE
        self.html = ""
        self.focused = False
        self._selection: Selection | None = Selection.caret(len(self.buffer))
        self._after_render: list[Callable[[], None]] = []

    # ── host widget state ───────────────────────────────────────────────
    @property
    def attached(self) -> bool:
        return self._selection is not None

    def attach(self) -> None:
        if self._selection is None:
            self._selection = Selection.caret(len(self.buffer))

    def detach(self) -> None:
        self._selection = None
        self.focused = False

    @property
    def selection(self) -> Selection | None:
        return self._selection

    def select(self, start: int, end: int | None = None) -> None:
        """Record the widget's cursor/selection as reported by the host."""
        sel = Selection(start, start if end is None else end).check(self.buffer)
        self.attach()
        self._selection = sel

    def selected_text(self) -> str:
        if self._selection is None:
            return ""
        return selected_text(self.buffer, self._selection.clamp(self.buffer))

    def _cursor(self) -> Selection:
        # a detached widget has no selection; behave like a caret at the end
        if self._selection is None:
            return Selection.caret(len(self.buffer))
        return self._selection.clamp(self.buffer)

    # ── deferred work ───────────────────────────────────────────────────
    def after_render(self, callback: Callable[[], None]) -> None:
        self._after_render.append(callback)

    def rendered(self) -> None:
        """Host finished painting the current buffer: run queued callbacks."""
        pending, self._after_render = self._after_render, []
        for cb in pending:
            cb()

    def _restore(self, sel: Selection) -> None:
        if self._selection is None:
            return
        self.focused = True
        self._selection = sel.clamp(self.buffer)

    # ── mutations ───────────────────────────────────────────────────────
    def _set_buffer(self, text: str) -> None:
        self.buffer = text
        self.html = render(text)
        if self.on_change is not None:
            self.on_change(str(text))

    def change(self, text: str | None) -> None:
        """The user typed: *text* is the widget's new value."""
        self._set_buffer(text or "")
        if self._selection is not None:
            self._selection = self._selection.clamp(self.buffer)

    def set_content(self, content: str | None) -> None:
        content = content or ""
        if content == self.buffer:
            return
        self.buffer = content
        self.html = render(content)
        if self._selection is not None:
            self._selection = self._selection.clamp(content)

    def apply(self, op: str, **kw) -> Edit:
        edit = apply(op, self.buffer, self._cursor(), **kw)
        self._set_buffer(edit.buffer)
        self.after_render(lambda: self._restore(edit.selection))
        return edit

    def bold(self) -> Edit:
        return self.apply("bold")

    def italic(self) -> Edit:
        return self.apply("italic")

    def heading(self, level: int) -> Edit:
        return self.apply("heading", level=level)

    def bulleted_list(self) -> Edit:
        return self.apply("bulleted-list")

    def numbered_list(self) -> Edit:
        return self.apply("numbered-list")

    def inline_code(self) -> Edit:
        return self.apply("inline-code")

    def code_block(self) -> Edit:
        return self.apply("code-block")

    def quote(self) -> Edit:
        return self.apply("blockquote")

    def link(self) -> Edit:
        return self.apply("link")

    def horizontal_rule(self) -> Edit:
        return self.apply("horizontal-rule")

    def image(self, src: str, alt: str = "Image") -> Edit:
        return self.apply("image", src=src, alt=alt)

    # ── tabs ────────────────────────────────────────────────────────────
    def show(self, tab: str) -> None:
        if tab not in TABS:
            raise ValueError(f"tab must be one of {TABS}")
        self.active_tab = tab
        if tab == PREVIEW:
            self.html = render(self.buffer)

    @property
    def preview(self) -> str:
        return self.html if self.active_tab == PREVIEW else ""
