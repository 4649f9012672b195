"""Pull candidate asset addresses out of HTML, Markdown, JSON and plain text.

Every recognition rule runs independently over the whole blob and the results
are unioned. Matches are percent-decoded, pseudo-scheme and fragment values are
dropped, and what remains is split into absolute (``http(s)://``) addresses and
site-relative (``/...``) paths.
"""

from __future__ import annotations

import dataclasses
import re
import urllib.parse

from attachment_intel.common import decode_url

# --------------------------- Recognition Rules ------------------------------ #

HTML_IMG_PATTERN = re.compile(r"<img[^>]+src=[\"']([^\"']+)[\"']", re.IGNORECASE)
HTML_A_PATTERN = re.compile(r"<a[^>]+href=[\"']([^\"']+)[\"']", re.IGNORECASE)
HTML_MEDIA_PATTERN = re.compile(r"<(?:source|video|audio)[^>]+src=[\"']([^\"']+)[\"']", re.IGNORECASE)

MD_IMAGE_PATTERN = re.compile(r"!\[[^\]]*\]\(([^)\s]+)(?:\s+[\"'][^\"']*[\"'])?\)")
MD_LINK_PATTERN = re.compile(r"(?<!!)\[[^\]]*\]\(([^)\s]+)(?:\s+[\"'][^\"']*[\"'])?\)")

# Optional matching quote on both sides; the address itself is group 2.
HTTP_URL_PATTERN = re.compile(r"([\"']?)(https?://[^\"'\s<>\])]+)\1")

# Preceding host characters mean this is the path part of an absolute URL.
UPLOAD_PATH_PATTERN = re.compile(r"(?<![a-zA-Z0-9.\-])(/upload/[^\"'\s<>\])]+)")

RULES: tuple[tuple[re.Pattern[str], int], ...] = (
    (HTML_IMG_PATTERN, 1),
    (HTML_A_PATTERN, 1),
    (HTML_MEDIA_PATTERN, 1),
    (MD_IMAGE_PATTERN, 1),
    (MD_LINK_PATTERN, 1),
    (HTTP_URL_PATTERN, 2),
    (UPLOAD_PATH_PATTERN, 1),
)

IGNORED_PREFIXES = ("data:", "javascript:", "mailto:", "#")


@dataclasses.dataclass(slots=True)
class ExtractResult:
    full_urls: set[str] = dataclasses.field(default_factory=set)
    relative_paths: set[str] = dataclasses.field(default_factory=set)

    def is_empty(self) -> bool:
        return not self.full_urls and not self.relative_paths


# ------------------------------- Extraction --------------------------------- #


def is_full_url(url: str | None) -> bool:
    return bool(url) and (url.startswith("http://") or url.startswith("https://"))


def is_valid_candidate(url: str) -> bool:
    return bool(url) and not url.startswith(IGNORED_PREFIXES)


def classify_address(url: str | None) -> str | None:
    """Return ``"full"``, ``"relative"`` or ``None`` for a single stored address."""
    if not url or url.startswith("data:"):
        return None
    if is_full_url(url):
        return "full"
    if url.startswith("/"):
        return "relative"
    return None


def extract(content: str | None) -> ExtractResult:
    result = ExtractResult()
    if not content or not content.strip():
        return result

    for pattern, group in RULES:
        for match in pattern.finditer(content):
            raw = match.group(group)
            if not raw or not raw.strip():
                continue
            decoded = decode_url(raw.strip())
            if not is_valid_candidate(decoded):
                continue
            if is_full_url(decoded):
                result.full_urls.add(decoded)
            elif decoded.startswith("/"):
                result.relative_paths.add(decoded)
    return result


def extract_all(content: str | None) -> set[str]:
    result = extract(content)
    return result.full_urls | result.relative_paths


def extract_path(full_url: str) -> str:
    """Strip scheme and host from an absolute URL; other values pass through."""
    if not is_full_url(full_url):
        return full_url
    try:
        return urllib.parse.urlsplit(full_url).path
    except ValueError:
        idx = full_url.find("://")
        if idx > 0:
            path_start = full_url.find("/", idx + 3)
            if path_start > 0:
                return full_url[path_start:]
        return full_url
