"""URL content fetcher: detect links in text, scrape pages to bounded plain text.

Every failure (timeout, HTTP error, wrong content type, bad URL) is
recovered here and reported as an empty string; callers never see an
exception from this module.
"""

from __future__ import annotations

import concurrent.futures
import re
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

import requests

import config as config_mod


FETCH_TIMEOUT_S = 8.0
PRIMARY_LIMIT = 15_000  # chars kept from the requested page
SUBPAGE_LIMIT = 5_000  # chars kept from each followed same-domain page
COMBINED_LIMIT = 30_000  # chars kept overall
MAX_SUBPAGES = 5
MAX_WORKERS = 8
READ_CHUNK = 16 * 1024
MAX_BODY_BYTES = 2 * 1024 * 1024  # raw bytes read per page before parsing

_URL_RE = re.compile(r"https?://[^\s<>\"]+")
_HREF_RE = re.compile(r"href=[\"']([^\"']+)[\"']", re.IGNORECASE)
_SCRIPT_RE = re.compile(r"<script[\s\S]*?</script>", re.IGNORECASE)
_STYLE_RE = re.compile(r"<style[\s\S]*?</style>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")

# &amp; goes last so "&amp;lt;" decodes to the literal "&lt;"
_ENTITIES = (
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&#39;", "'"),
    ("&nbsp;", " "),
    ("&amp;", "&"),
)


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------
def extract_urls(text: str) -> List[str]:
    """Return the distinct http(s) URLs in *text*, in first-seen order."""
    seen: List[str] = []
    for raw in _URL_RE.findall(text or ""):
        url = raw.rstrip(".,;:!?'")
        if url.endswith(")") and "(" not in url:
            url = url.rstrip(")")
        if url and url not in seen:
            seen.append(url)
    return seen


def is_http_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def strip_html(html: str) -> str:
    """Drop script/style blocks and tags, decode common entities, collapse whitespace."""
    text = _SCRIPT_RE.sub("", html)
    text = _STYLE_RE.sub("", text)
    text = _TAG_RE.sub(" ", text)
    for entity, char in _ENTITIES:
        text = text.replace(entity, char)
    return _WS_RE.sub(" ", text).strip()


def same_domain_links(html: str, base_url: str) -> List[str]:
    """Distinct absolute links in *html* on the same hostname as *base_url*."""
    host = urlparse(base_url).hostname
    links: List[str] = []
    for href in _HREF_RE.findall(html):
        try:
            resolved = urljoin(base_url, href)
            parsed = urlparse(resolved)
        except ValueError:
            continue
        if parsed.scheme not in ("http", "https"):
            continue
        if parsed.hostname == host and resolved != base_url and resolved not in links:
            links.append(resolved)
    return links


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------
def _read_body(resp: requests.Response, stop: threading.Event) -> bytes:
    body = bytearray()
    for chunk in resp.iter_content(chunk_size=READ_CHUNK):
        if stop.is_set():
            break
        body.extend(chunk)
        if len(body) >= MAX_BODY_BYTES:
            break
    return bytes(body[:MAX_BODY_BYTES])


def _fetch_raw(url: str, timeout_s: float) -> Optional[Tuple[str, str]]:
    """GET *url* within an overall deadline; return (plain_text, raw_html) or None.

    The socket timeout alone only bounds each read, so the body is read on a
    worker and abandoned once *timeout_s* has elapsed since the request started.
    """
    deadline = time.monotonic() + timeout_s
    try:
        resp = requests.get(url, timeout=timeout_s, headers={"User-Agent": "Dendro/1.0"}, stream=True)
    except requests.RequestException as exc:
        if config_mod.DEBUG_MODE:
            print(f"[DEBUG] URL fetch failed: {url} ({exc.__class__.__name__})")
        return None
    stop = threading.Event()
    reader = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="dendro-urlread")
    try:
        if resp.status_code < 200 or resp.status_code >= 300:
            if config_mod.DEBUG_MODE:
                print(f"[DEBUG] URL fetch HTTP {resp.status_code}: {url}")
            return None
        content_type = resp.headers.get("Content-Type", "")
        if "text/html" not in content_type and "text/plain" not in content_type:
            return None
        future = reader.submit(_read_body, resp, stop)
        try:
            body = future.result(timeout=max(0.0, deadline - time.monotonic()))
        except concurrent.futures.TimeoutError:
            if config_mod.DEBUG_MODE:
                print(f"[DEBUG] URL fetch deadline exceeded: {url}")
            return None
        except requests.RequestException as exc:
            if config_mod.DEBUG_MODE:
                print(f"[DEBUG] URL body read failed: {url} ({exc.__class__.__name__})")
            return None
    finally:
        stop.set()
        resp.close()
        reader.shutdown(wait=False)
    try:
        raw = body.decode(resp.encoding or "utf-8", errors="replace")
    except LookupError:
        raw = body.decode("utf-8", errors="replace")
    return strip_html(raw), raw


def fetch_url_content(url: str, follow_same_domain: bool = False,
                      timeout_s: float = FETCH_TIMEOUT_S) -> str:
    """Fetch *url* as bounded plain text, optionally appending same-domain sub-pages.

    Returns "" when the primary page cannot be fetched.  Sub-page failures
    contribute nothing and never abort their siblings.
    """
    if not is_http_url(url):
        return ""
    primary = _fetch_raw(url, timeout_s)
    if primary is None:
        return ""
    text, raw = primary
    combined = text[:PRIMARY_LIMIT]

    if follow_same_domain:
        sub_links = same_domain_links(raw, url)[:MAX_SUBPAGES]
        if sub_links:
            with concurrent.futures.ThreadPoolExecutor(max_workers=len(sub_links)) as executor:
                results = list(executor.map(lambda link: _fetch_raw(link, timeout_s), sub_links))
            for link, result in zip(sub_links, results):
                if result is not None:
                    combined += f"\n\n[Subpage: {link}]\n{result[0][:SUBPAGE_LIMIT]}"

    return combined[:COMBINED_LIMIT]


def fetch_many(
    urls: Iterable[str],
    follow_same_domain: bool = False,
    fetch_fn: Callable[[str, bool], str] | None = None,
) -> Dict[str, str]:
    """Resolve URLs concurrently; return {url: text} for the ones that yielded content.

    Result order follows the input order.
    """
    targets = [u for u in dict.fromkeys(urls) if u]
    if not targets:
        return {}
    fetch = fetch_fn or fetch_url_content

    def _one(url: str) -> str:
        try:
            return fetch(url, follow_same_domain) or ""
        except Exception as exc:  # one bad URL must not sink the batch
            print(f"[Dendro] URL fetch error for {url}: {exc}")
            return ""

    with concurrent.futures.ThreadPoolExecutor(max_workers=min(len(targets), MAX_WORKERS)) as executor:
        texts = list(executor.map(_one, targets))
    fetched = {url: text for url, text in zip(targets, texts) if text}
    print(f"[Dendro] URL fetch: {len(fetched)}/{len(targets)} succeeded")
    return fetched
