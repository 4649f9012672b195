"""Walk every content-bearing entity kind and index the asset addresses found in it."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable

from attachment_intel.common import decode_url
from attachment_intel.models import ConfigMap, ContentBody, ReferenceDescriptor
from attachment_intel.platform import (
    KIND_DOC,
    KIND_DOC_PROJECT,
    KIND_MOMENT,
    KIND_PHOTO,
    SYSTEM_CONFIG_MAP,
    ContentPlatform,
)
from attachment_intel.settings import DEFAULT_CONTENT_FETCH_TIMEOUT_SECONDS, ContentKinds
from attachment_intel.url_extractor import classify_address, extract

LOGGER = logging.getLogger("attachment_intel.traversal")

SOURCE_POST = "Post"
SOURCE_PAGE = "Page"
SOURCE_COMMENT = "Comment"
SOURCE_REPLY = "Reply"
SOURCE_SYSTEM_SETTING = "SystemSetting"
SOURCE_PLUGIN_SETTING = "PluginSetting"
SOURCE_THEME_SETTING = "ThemeSetting"
SOURCE_USER = "User"
SOURCE_MOMENT = "Moment"
SOURCE_PHOTO = "Photo"
SOURCE_DOC = "Doc"


@dataclasses.dataclass(slots=True)
class Fragment:
    """A piece of content paired with the descriptor of where it came from.

    ``verbatim`` fragments hold one stored address (a cover or avatar field)
    and are percent-decoded and classified whole instead of being run through
    the extractor.
    """

    text: str
    descriptor: ReferenceDescriptor
    verbatim: bool = False


class ReferenceIndex:
    """Two multimaps from extracted address to the descriptors that used it."""

    def __init__(self) -> None:
        self.full_urls: dict[str, set[ReferenceDescriptor]] = {}
        self.relative_paths: dict[str, set[ReferenceDescriptor]] = {}
        self.fragments = 0

    def add(self, fragment: Fragment) -> None:
        self.fragments += 1
        if fragment.verbatim:
            address = decode_url(fragment.text)
            kind = classify_address(address)
            if kind == "full":
                self.full_urls.setdefault(address, set()).add(fragment.descriptor)
            elif kind == "relative":
                self.relative_paths.setdefault(address, set()).add(fragment.descriptor)
            return

        result = extract(fragment.text)
        for url in result.full_urls:
            self.full_urls.setdefault(url, set()).add(fragment.descriptor)
        for path in result.relative_paths:
            self.relative_paths.setdefault(path, set()).add(fragment.descriptor)

    def lookup_full(self, url: str) -> set[ReferenceDescriptor]:
        return self.full_urls.get(url, set())

    def lookup_relative(self, path: str) -> set[ReferenceDescriptor]:
        return self.relative_paths.get(path, set())


# ------------------------------ Scanner Registry ---------------------------- #

ScanFn = Callable[[ContentPlatform, float], AsyncIterator[Fragment]]


@dataclasses.dataclass(slots=True)
class Scanner:
    name: str
    scan: ScanFn
    enabled: Callable[[ContentKinds], bool]
    requires: str | None = None

    def available(self, platform: ContentPlatform) -> bool:
        return self.requires is None or platform.has_kind(self.requires)


SCANNERS: list[Scanner] = []


def register(name: str, enabled: Callable[[ContentKinds], bool] = lambda kinds: True,
             requires: str | None = None) -> Callable[[ScanFn], ScanFn]:
    def wrap(fn: ScanFn) -> ScanFn:
        SCANNERS.append(Scanner(name=name, scan=fn, enabled=enabled, requires=requires))
        return fn

    return wrap


def _body_fragments(body: ContentBody | None, descriptor: ReferenceDescriptor) -> list[Fragment]:
    if body is None:
        return []
    return [Fragment(text, descriptor) for text in (body.raw, body.rendered) if text and text.strip()]


async def _documents(
    source_type: str,
    listing: Callable[[], Awaitable[list[Any]]],
    fetch: Callable[[str], Awaitable[ContentBody | None]],
    url_for: Callable[[str | None], str],
    timeout: float,
) -> AsyncIterator[Fragment]:
    for doc in await asyncio.wait_for(listing(), timeout):
        url = url_for(doc.slug)
        if doc.cover and doc.cover.strip():
            yield Fragment(
                doc.cover,
                ReferenceDescriptor(source_type, doc.name, doc.title, url, doc.deleted, "cover"),
                verbatim=True,
            )
        descriptor = ReferenceDescriptor(source_type, doc.name, doc.title, url, doc.deleted, "content")
        try:
            body = await asyncio.wait_for(fetch(doc.name), timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("content_fetch_timeout kind=%s name=%s timeout=%s", source_type, doc.name, timeout)
            continue
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning("content_fetch_failed kind=%s name=%s error=%s", source_type, doc.name, exc)
            continue
        for fragment in _body_fragments(body, descriptor):
            yield fragment


@register("posts", enabled=lambda kinds: kinds.posts)
async def scan_posts(platform: ContentPlatform, timeout: float) -> AsyncIterator[Fragment]:
    async for fragment in _documents(
        SOURCE_POST, platform.list_posts, platform.fetch_post_content,
        lambda slug: f"/archives/{slug}", timeout,
    ):
        yield fragment


@register("pages", enabled=lambda kinds: kinds.pages)
async def scan_pages(platform: ContentPlatform, timeout: float) -> AsyncIterator[Fragment]:
    async for fragment in _documents(
        SOURCE_PAGE, platform.list_pages, platform.fetch_page_content,
        lambda slug: f"/{slug}", timeout,
    ):
        yield fragment


@register("comments", enabled=lambda kinds: kinds.comments)
async def scan_comments(platform: ContentPlatform, timeout: float) -> AsyncIterator[Fragment]:
    for comment in await asyncio.wait_for(platform.list_comments(), timeout):
        if not comment.raw or not comment.raw.strip():
            continue
        # Parent title is resolved on display, not here.
        title = f"{comment.subject_kind}:{comment.subject_name}" if comment.subject_kind else "Comment"
        yield Fragment(comment.raw, ReferenceDescriptor(SOURCE_COMMENT, comment.name, title, None, False, "comment"))


@register("replies", enabled=lambda kinds: kinds.comments)
async def scan_replies(platform: ContentPlatform, timeout: float) -> AsyncIterator[Fragment]:
    for reply in await asyncio.wait_for(platform.list_replies(), timeout):
        if not reply.raw or not reply.raw.strip():
            continue
        title = f"Comment:{reply.comment_name}" if reply.comment_name else "Reply"
        yield Fragment(reply.raw, ReferenceDescriptor(SOURCE_REPLY, reply.name, title, None, False, "reply"))


def _string_leaves(node: Any) -> Iterable[str]:
    if isinstance(node, str):
        yield node
    elif isinstance(node, dict):
        for value in node.values():
            yield from _string_leaves(value)
    elif isinstance(node, list):
        for value in node:
            yield from _string_leaves(value)


def config_fragments(
    config_map: ConfigMap,
    source_type: str,
    title: str,
    setting_name: str | None,
    url_for: Callable[[str], str],
) -> list[Fragment]:
    """One descriptor per config group; each string leaf of the group is scanned."""
    out: list[Fragment] = []
    for group_key, raw in config_map.data.items():
        if not isinstance(raw, str) or not raw.strip():
            continue
        descriptor = ReferenceDescriptor(
            source_type, config_map.name, title, url_for(group_key), False, group_key, setting_name
        )
        try:
            parsed = json.loads(raw)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            out.extend(Fragment(leaf, descriptor) for leaf in _string_leaves(parsed) if leaf.strip())
        else:
            out.append(Fragment(raw, descriptor))
    return out


@register("system-settings")
async def scan_system_settings(platform: ContentPlatform, timeout: float) -> AsyncIterator[Fragment]:
    config_map = await asyncio.wait_for(platform.fetch_config_map(SYSTEM_CONFIG_MAP), timeout)
    if config_map is None:
        return
    for fragment in config_fragments(
        config_map, SOURCE_SYSTEM_SETTING, "System settings", SYSTEM_CONFIG_MAP,
        lambda group: f"/console/settings?tab={group}",
    ):
        yield fragment


@register("plugin-settings")
async def scan_plugin_settings(platform: ContentPlatform, timeout: float) -> AsyncIterator[Fragment]:
    for plugin in await asyncio.wait_for(platform.list_plugins(), timeout):
        if not plugin.config_map_name:
            continue
        try:
            config_map = await asyncio.wait_for(platform.fetch_config_map(plugin.config_map_name), timeout)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning("config_fetch_failed plugin=%s map=%s error=%s", plugin.name, plugin.config_map_name, exc)
            continue
        if config_map is None:
            continue
        title = f"{plugin.display_name or plugin.name} plugin settings"
        for fragment in config_fragments(
            config_map, SOURCE_PLUGIN_SETTING, title, plugin.setting_name,
            lambda group, name=plugin.name: f"/console/plugins/{name}?tab={group}",
        ):
            yield fragment


@register("theme-settings")
async def scan_theme_settings(platform: ContentPlatform, timeout: float) -> AsyncIterator[Fragment]:
    for theme in await asyncio.wait_for(platform.list_themes(), timeout):
        if not theme.config_map_name:
            continue
        try:
            config_map = await asyncio.wait_for(platform.fetch_config_map(theme.config_map_name), timeout)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning("config_fetch_failed theme=%s map=%s error=%s", theme.name, theme.config_map_name, exc)
            continue
        if config_map is None:
            continue
        title = f"{theme.display_name or theme.name} theme settings"
        for fragment in config_fragments(
            config_map, SOURCE_THEME_SETTING, title, theme.setting_name,
            lambda group: f"/console/theme/settings/{group}",
        ):
            yield fragment


@register("avatars")
async def scan_avatars(platform: ContentPlatform, timeout: float) -> AsyncIterator[Fragment]:
    for user in await asyncio.wait_for(platform.list_users(), timeout):
        if not user.avatar or not user.avatar.strip():
            continue
        yield Fragment(
            user.avatar,
            ReferenceDescriptor(SOURCE_USER, user.name, user.display_name, user.permalink, False, "avatar"),
            verbatim=True,
        )


# ---------------------------- Extension Kinds ------------------------------- #


def _ext_name(ext: dict[str, Any]) -> str:
    metadata = ext.get("metadata") or {}
    return str(metadata.get("name") or ext.get("name") or "")


def _ext_section(ext: dict[str, Any], key: str) -> dict[str, Any]:
    node = ext.get(key)
    return node if isinstance(node, dict) else {}


@register("moments", enabled=lambda kinds: kinds.moments, requires=KIND_MOMENT)
async def scan_moments(platform: ContentPlatform, timeout: float) -> AsyncIterator[Fragment]:
    for ext in await asyncio.wait_for(platform.list_extensions(KIND_MOMENT), timeout):
        name = _ext_name(ext)
        descriptor = ReferenceDescriptor(SOURCE_MOMENT, name, "Moment", f"/moments/{name}", False, "content")
        for leaf in _string_leaves(_ext_section(ext, "spec")):
            if leaf.strip():
                yield Fragment(leaf, descriptor)


@register("photos", enabled=lambda kinds: kinds.photos, requires=KIND_PHOTO)
async def scan_photos(platform: ContentPlatform, timeout: float) -> AsyncIterator[Fragment]:
    for ext in await asyncio.wait_for(platform.list_extensions(KIND_PHOTO), timeout):
        name = _ext_name(ext)
        spec = _ext_section(ext, "spec")
        url = spec.get("url")
        cover = spec.get("cover")
        if url:
            yield Fragment(url, ReferenceDescriptor(SOURCE_PHOTO, name, "Photo", "/photos", False, "content"),
                           verbatim=True)
        if cover and cover != url:
            yield Fragment(cover, ReferenceDescriptor(SOURCE_PHOTO, name, "Photo", "/photos", False, "cover"),
                           verbatim=True)


@register("docs", enabled=lambda kinds: kinds.docs, requires=KIND_DOC)
async def scan_docs(platform: ContentPlatform, timeout: float) -> AsyncIterator[Fragment]:
    for ext in await asyncio.wait_for(platform.list_extensions(KIND_DOC), timeout):
        name = _ext_name(ext)
        spec = _ext_section(ext, "spec")
        head = spec.get("headSnapshot")
        base = spec.get("releaseSnapshot") or head
        descriptor = ReferenceDescriptor(SOURCE_DOC, name, f"Doc:{name}", None, False, "content")
        try:
            body = await asyncio.wait_for(platform.fetch_snapshot_content(head, base), timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("content_fetch_timeout kind=%s name=%s timeout=%s", SOURCE_DOC, name, timeout)
            continue
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning("content_fetch_failed kind=%s name=%s error=%s", SOURCE_DOC, name, exc)
            continue
        for fragment in _body_fragments(body, descriptor):
            yield fragment


@register("doc-projects", enabled=lambda kinds: kinds.docs, requires=KIND_DOC_PROJECT)
async def scan_doc_projects(platform: ContentPlatform, timeout: float) -> AsyncIterator[Fragment]:
    for ext in await asyncio.wait_for(platform.list_extensions(KIND_DOC_PROJECT), timeout):
        name = _ext_name(ext)
        spec = _ext_section(ext, "spec")
        icon = spec.get("icon")
        if not icon:
            continue
        permalink = _ext_section(ext, "status").get("permalink")
        descriptor = ReferenceDescriptor(SOURCE_DOC, name, spec.get("displayName") or name, permalink, False, "icon")
        yield Fragment(icon, descriptor, verbatim=True)


# ------------------------------- Orchestration ------------------------------ #


def active_scanners(platform: ContentPlatform, kinds: ContentKinds) -> list[Scanner]:
    active = []
    for scanner in SCANNERS:
        if not scanner.enabled(kinds):
            continue
        if not scanner.available(platform):
            LOGGER.info("scanner_skipped name=%s reason=kind_not_installed kind=%s", scanner.name, scanner.requires)
            continue
        active.append(scanner)
    return active


_DONE = object()


async def stream(
    platform: ContentPlatform,
    kinds: ContentKinds,
    fetch_timeout: float = DEFAULT_CONTENT_FETCH_TIMEOUT_SECONDS,
) -> AsyncIterator[Fragment]:
    """Run every active scanner concurrently and yield fragments as they arrive.

    Every platform call a scanner makes is bounded by ``fetch_timeout``; one
    slow entity is skipped, not waited on.
    """
    scanners = active_scanners(platform, kinds)
    queue: asyncio.Queue[Any] = asyncio.Queue()

    async def pump(scanner: Scanner) -> None:
        count = 0
        try:
            async for fragment in scanner.scan(platform, fetch_timeout):
                count += 1
                await queue.put(fragment)
            LOGGER.info("scanner_done name=%s fragments=%s", scanner.name, count)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning("scanner_failed name=%s fragments=%s error=%s", scanner.name, count, exc)
        finally:
            await queue.put(_DONE)

    tasks = [asyncio.create_task(pump(s)) for s in scanners]
    remaining = len(tasks)
    try:
        while remaining:
            item = await queue.get()
            if item is _DONE:
                remaining -= 1
                continue
            yield item
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()


async def build_index(
    platform: ContentPlatform,
    kinds: ContentKinds,
    fetch_timeout: float = DEFAULT_CONTENT_FETCH_TIMEOUT_SECONDS,
) -> ReferenceIndex:
    index = ReferenceIndex()
    async for fragment in stream(platform, kinds, fetch_timeout):
        index.add(fragment)
    LOGGER.info(
        "index_built fragments=%s full_urls=%s relative_paths=%s",
        index.fragments, len(index.full_urls), len(index.relative_paths),
    )
    return index
