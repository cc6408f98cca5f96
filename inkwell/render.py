"""
Markdown → HTML for the editor preview and the post pages.

A deliberately small converter: a fixed sequence of regex rewrites, each one
working on the output of the previous pass.  The order matters:

    images → headings → bold → italic → links → lists → code blocks →
    inline code → blockquotes → rules → soft breaks → paragraphs → cosmetics

The pipeline is lossy and one-directional.  ``render(render(x))`` is *not*
expected to equal ``render(x)``; the output is HTML for display only.
"""

import re
from html import escape, unescape

IMG_STYLE = (
    "max-height:300px;display:block;max-width:100%;"
    "border-radius:0.375rem;box-shadow:0 1px 3px rgba(0,0,0,.1);"
)
FIGURE_STYLE = "margin:1.5rem 0;"
P_STYLE = "margin:0.25rem 0;line-height:1.2;"

# ``![alt](src)`` and raw ``<img src="data:image/...;base64,...">`` tags
_MD_IMG_RE = re.compile(r"!\[(.*?)\]\((.*?)\)")
_B64_IMG_RE = re.compile(r'<img\s+src="(data:image/[^;]+;base64,[^"]+)"([^>]*)>')
_ANY_IMG_RE = re.compile(f"{_MD_IMG_RE.pattern}|{_B64_IMG_RE.pattern}")

_H3_RE = re.compile(r"^### (.+)$", re.M)
_H2_RE = re.compile(r"^## (.+)$", re.M)
_H1_RE = re.compile(r"^# (.+)$", re.M)

_BOLD_RE = re.compile(r"\*\*(.+?)\*\*")
_ITALIC_RE = re.compile(r"\*(.+?)\*")
_LINK_RE = re.compile(r"\[(.+?)\]\((.+?)\)")

_UL_ITEM_RE = re.compile(r"^- (.+)$", re.M)
_OL_ITEM_RE = re.compile(r"^\d+\. (.+)$", re.M)
_UL_RUN_RE = re.compile(r'(<li class="md-ul">.+</li>\n?)+')
_OL_RUN_RE = re.compile(r'(<li class="md-ol">.+</li>\n?)+')

_FENCE_RE = re.compile(r"```([\s\S]+?)```")
_CODE_RE = re.compile(r"`(.+?)`")
_QUOTE_RE = re.compile(r"^&gt; (.+)$", re.M)
_HR_RE = re.compile(r"^---$", re.M)

_SOFT_BREAK_RE = re.compile(r"(?<!\n)\n(?!\n)")
_PARA_RE = re.compile(r"^(?!</?[a-z]).+$", re.M)
_BLANK_RUN_RE = re.compile(r"\n{2,}")
_BARE_NL_RE = re.compile(r"\n(?!<)")

BLOCK_CLOSERS = (
    "</h1>", "</h2>", "</h3>", "</ul>", "</ol>", "</li>",
    "</pre>", "</code>", "</blockquote>", "</div>", "<hr>",
)
BLOCK_OPENERS = ("<h1", "<h2", "<h3", "<ul", "<ol", "<li", "<pre", "<blockquote", "<hr", "<div")

SAFE_SCHEMES = ("http", "https", "mailto")
# browsers drop these anywhere in a URL (tabs, newlines) or before the scheme
_URL_CTRL_RE = re.compile(r"[\x00-\x20\x7f]")
_CTRL_RE = re.compile(r"[\x00-\x1f\x7f]")
_SCHEME_RE = re.compile(r"^([a-z][a-z0-9+.\-]*):")
_STASHED_RE = re.compile(r"<!--code:(\d+)-->")


def _attr(value: str) -> str:
    """
    Escape an attribute value so no later inline pass can match inside it.
    """
    return (
        escape(value, quote=True)
        .replace("*", "&#42;")
        .replace("`", "&#96;")
        .replace("[", "&#91;")
        .replace("]", "&#93;")
        .replace("_", "&#95;")
    )


def _figure(src: str, alt: str) -> str:
    return (
        f'<div class="md-figure" style="{FIGURE_STYLE}">'
        f'<img class="md-img" src="{_attr(src)}" alt="{_attr(alt or "Image")}"'
        f' style="{IMG_STYLE}"/></div>'
    )


def _image_repl(m: re.Match) -> str:
    if m.group(3) is not None:  # inline <img src="data:...">
        attrs = (m.group(4) or "").strip().rstrip("/").strip()
        alt = re.search(r'\balt="([^"]*)"', attrs)
        return _figure(m.group(3), alt.group(1) if alt else "")
    return _figure(m.group(2), m.group(1))


def _images(text: str) -> str:
    """
    Pass 1: rewrite images into their container and HTML-escape everything
    else, so raw markup never reaches the output.
    """
    out, pos = [], 0
    for m in _ANY_IMG_RE.finditer(text):
        out.append(escape(text[pos : m.start()], quote=False))
        out.append(_image_repl(m))
        pos = m.end()
    out.append(escape(text[pos:], quote=False))
    return "".join(out)


def _safe_href(url: str) -> str:
    """
    Keep relative URLs and the schemes in ``SAFE_SCHEMES``; anything else
    becomes ``#``.  The scheme is judged on what the browser will see:
    entities decoded, control characters and whitespace removed.
    """
    seen = _URL_CTRL_RE.sub("", unescape(url)).lower()
    scheme = _SCHEME_RE.match(seen)
    if scheme and scheme.group(1) not in SAFE_SCHEMES:
        return "#"
    return _CTRL_RE.sub("", url).replace('"', "&quot;")


def _link_repl(m: re.Match) -> str:
    return (
        f'<a href="{_safe_href(m.group(2))}" target="_blank" '
        f'rel="noopener noreferrer" class="md-link">{m.group(1)}</a>'
    )


def _soft_breaks(html: str) -> str:
    def repl(m: re.Match) -> str:
        if html.endswith(BLOCK_CLOSERS, 0, m.start()):
            return "\n"
        if html.startswith(BLOCK_OPENERS, m.end()):
            return "\n"
        if html.startswith(BLOCK_CLOSERS, m.end()):
            return "\n"
        return "<br>"

    return _SOFT_BREAK_RE.sub(repl, html)


def render(text: str | None) -> str:
    """Convert a Markdown buffer to preview HTML.  Never raises."""
    if not text:
        return ""

    html = _images(text.replace("\r\n", "\n"))

    # longest prefix first
    html = _H3_RE.sub(r'<h3 class="md-h3">\1</h3>', html)
    html = _H2_RE.sub(r'<h2 class="md-h2">\1</h2>', html)
    html = _H1_RE.sub(r'<h1 class="md-h1">\1</h1>', html)

    # ** before *
    html = _BOLD_RE.sub(r"<strong>\1</strong>", html)
    html = _ITALIC_RE.sub(r"<em>\1</em>", html)

    html = _LINK_RE.sub(_link_repl, html)

    html = _UL_ITEM_RE.sub(r'<li class="md-ul">\1</li>', html)
    html = _OL_ITEM_RE.sub(r'<li class="md-ol">\1</li>', html)
    html = _UL_RUN_RE.sub(r"<ul>\g<0></ul>", html)
    html = _OL_RUN_RE.sub(r"<ol>\g<0></ol>", html)

    # ``` before `; fenced bodies sit out the remaining passes
    fenced: list[str] = []

    def _stash(m: re.Match) -> str:
        fenced.append(m.group(1))
        return f'<pre class="md-pre"><code><!--code:{len(fenced) - 1}--></code></pre>'

    html = _FENCE_RE.sub(_stash, html)
    html = _CODE_RE.sub(r'<code class="md-code">\1</code>', html)

    html = _QUOTE_RE.sub(r'<blockquote class="md-quote">\1</blockquote>', html)
    html = _HR_RE.sub("<hr>", html)

    html = _soft_breaks(html)
    html = _PARA_RE.sub(r'<p class="md-p">\g<0></p>', html)

    html = html.replace('<p class="md-p">', f'<p class="md-p" style="{P_STYLE}">')
    html = _BLANK_RUN_RE.sub("\n", html)
    html = _BARE_NL_RE.sub("<br>", html)
    return _STASHED_RE.sub(lambda m: fenced[int(m.group(1))], html)
