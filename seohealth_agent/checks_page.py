from __future__ import annotations

import json
import re
from collections import Counter
from typing import Any
from urllib.parse import parse_qs, urljoin, urlparse, urlunparse

from bs4 import BeautifulSoup, Comment, Doctype, Tag

from .models import FetchedPage
from .registry import Check, Finding, SharedServices, collector, host_of, soup_of

CHECKS: list[Check] = []
check = collector(CHECKS)

_STATUS_RANK = {"passed": 0, "improve": 1, "error": 2}


def _worst(*statuses: str) -> str:
    return max(statuses, key=lambda s: _STATUS_RANK[s])


def _text(tag: Tag | None) -> str:
    if tag is None:
        return ""
    return " ".join(tag.get_text(" ", strip=True).split())


STOPWORDS = frozenset("""
a about above after again against all am an and any are aren't as at be because been before being below
between both but by can't cannot could couldn't did didn't do does doesn't doing don't down during each few
for from further had hadn't has hasn't have haven't having he he'd he'll he's her here here's hers herself him
himself his how how's i i'd i'll i'm i've if in into is isn't it it's its itself let's me more most mustn't my
myself no nor not of off on once only or other ought our ours ourselves out over own same shan't she she'd
she'll she's should shouldn't so some such than that that's the their theirs them themselves then there
there's these they they'd they'll they're they've this those through to too under until up very was wasn't we
we'd we'll we're we've were weren't what what's when when's where where's which while who who's whom why
why's with won't would wouldn't you you'd you'll you're you've your yours yourself yourselves
""".split())


def visible_text(soup: BeautifulSoup) -> str:
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()
    return " ".join(soup.get_text(" ").split())


def keyword_words(text: str) -> list[str]:
    words = re.findall(r"[a-z]+", text.lower())
    return [w for w in words if len(w) > 2 and w not in STOPWORDS]


# Meta tags and headings

def _meta_content(soup: BeautifulSoup, name: str) -> str:
    tag = soup.find("meta", attrs={"name": re.compile(rf"^{name}$", re.I)})
    return (tag.get("content") or "").strip() if tag else ""


@check("meta_tags")
def meta_tags(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    soup = soup_of(page)
    title = _text(soup.title) if soup.title else ""
    description = _meta_content(soup, "description")
    keywords = _meta_content(soup, "keywords")

    title_len, desc_len = len(title), len(description)
    title_status = "improve" if title_len < 10 else "passed" if title_len < 70 else "error"
    desc_status = "improve" if desc_len < 70 else "passed" if desc_len < 300 else "error"

    notes = []
    if title_status != "passed":
        notes.append("Title should be between 10 and 70 characters." if title_len else "Page has no title.")
    if desc_status != "passed":
        notes.append(
            "Meta description should be between 70 and 300 characters." if desc_len else "Page has no meta description."
        )

    return Finding(
        _worst(title_status, desc_status),
        {
            "title": title,
            "title_length": title_len,
            "description": description,
            "description_length": desc_len,
            "keywords": keywords,
        },
        " ".join(notes) or "Title and meta description lengths look good.",
    )


@check("headings")
def headings(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    soup = soup_of(page)
    found = {f"h{i}": [_text(h) for h in soup.find_all(f"h{i}")] for i in range(1, 7)}

    counts = Counter(t.lower() for texts in found.values() for t in texts if t)
    duplicates = sorted(t for t, n in counts.items() if n > 1)

    suggestions = []
    if not found["h1"]:
        suggestions.append("Add an H1 heading that describes the page.")
    elif len(found["h1"]) > 1:
        suggestions.append("Use a single H1 heading per page.")
    if duplicates:
        suggestions.append("Avoid repeating the same heading text.")

    status = "passed" if len(found["h1"]) == 1 and not duplicates else "improve"
    return Finding(
        status,
        {**found, "counts": {k: len(v) for k, v in found.items()}, "duplicates": duplicates, "suggestions": suggestions},
        " ".join(suggestions) or "Heading structure looks good.",
    )


# Images

_REDUNDANT_ALT = {"image", "photo", "picture", "logo"}


@check("image_alt")
def image_alt(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    soup = soup_of(page)
    issues: dict[str, list[dict[str, Any]]] = {"missing": [], "empty": [], "short": [], "long": [], "redundant": []}
    images = soup.find_all("img")

    for position, img in enumerate(images, start=1):
        entry = {
            "src": img.get("src") or "",
            "title": img.get("title") or "",
            "width": img.get("width") or "",
            "height": img.get("height") or "",
            "class": " ".join(img.get("class") or []),
            "parent": img.parent.name if img.parent else "",
            "position": position,
        }
        alt = img.get("alt")
        if alt is None:
            issues["missing"].append(entry)
            continue
        alt = alt.strip()
        if not alt:
            issues["empty"].append(entry)
        elif alt.lower() in _REDUNDANT_ALT:
            issues["redundant"].append({**entry, "alt": alt})
        elif len(alt) < 5:
            issues["short"].append({**entry, "alt": alt})
        elif len(alt) > 100:
            issues["long"].append({**entry, "alt": alt})

    problem_count = sum(len(v) for v in issues.values())
    return Finding(
        "passed" if problem_count == 0 else "improve",
        {"total_images": len(images), "issue_count": problem_count, **issues},
        f"{problem_count} of {len(images)} images need better alt text." if problem_count else "All images have useful alt text.",
    )


# Links

_SKIP_HREF_PREFIXES = ("mailto:", "tel:", "javascript:", "#")
_TRACKING_PARAMS = {"utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content"}
_LINK_REGIONS = ("header", "nav", "footer", "aside", "main", "section")


def normalize_link(url: str) -> str:
    p = urlparse(url)
    return urlunparse(p._replace(scheme=p.scheme.lower(), netloc=p.netloc.lower(), path=p.path.rstrip("/"), fragment=""))


def _link_region(tag: Tag) -> str:
    for parent in tag.parents:
        if parent.name in _LINK_REGIONS:
            return parent.name
    return "body"


@check("links")
def links(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    soup = soup_of(page)
    base_host = host_of(page.url)

    stats = {
        "total_links": 0, "internal_links": 0, "external_links": 0,
        "nofollow": 0, "target_blank": 0, "image_links": 0, "text_links": 0,
        "https_links": 0, "http_links": 0, "tracking_links": 0,
    }
    regions: Counter[str] = Counter()
    external_domains: set[str] = set()
    anchor_lengths: list[int] = []

    for a in soup.find_all("a", href=True):
        href = a["href"].strip()
        if not href or href.lower().startswith(_SKIP_HREF_PREFIXES):
            continue
        absolute = normalize_link(urljoin(page.url, href))
        parsed = urlparse(absolute)
        if parsed.scheme not in ("http", "https"):
            continue

        stats["total_links"] += 1
        host = (parsed.hostname or "").lower()
        if host == base_host:
            stats["internal_links"] += 1
        else:
            stats["external_links"] += 1
            external_domains.add(host)

        rel = [r.lower() for r in (a.get("rel") or [])]
        if "nofollow" in rel:
            stats["nofollow"] += 1
        if (a.get("target") or "").lower() == "_blank":
            stats["target_blank"] += 1
        if a.find("img") is not None:
            stats["image_links"] += 1
        else:
            stats["text_links"] += 1
            anchor_lengths.append(len(_text(a)))
        stats["https_links" if parsed.scheme == "https" else "http_links"] += 1
        if _TRACKING_PARAMS & set(parse_qs(parsed.query)):
            stats["tracking_links"] += 1
        regions[_link_region(a)] += 1

    total = stats["total_links"]
    external = stats["external_links"]
    payload = {
        **stats,
        "by_region": dict(regions),
        "external_domains": sorted(external_domains),
        "avg_anchor_length": round(sum(anchor_lengths) / len(anchor_lengths), 2) if anchor_lengths else 0,
        "link_diversity": round(len(external_domains) / external, 2) if external else 0,
        "nofollow_percent": round(stats["nofollow"] / total * 100, 2) if total else 0,
        "dofollow_percent": round((total - stats["nofollow"]) / total * 100, 2) if total else 0,
    }
    if stats["internal_links"]:
        return Finding("passed", payload, f"Found {total} links ({stats['internal_links']} internal, {external} external).")
    return Finding("improve", payload, "The page has no internal links.")


@check("unsafe_cross_origin_links")
def unsafe_cross_origin_links(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    soup = soup_of(page)
    unsafe = []
    for a in soup.find_all("a", target=True):
        if a["target"].lower() != "_blank":
            continue
        rel = {r.lower() for r in (a.get("rel") or [])}
        if not rel & {"noopener", "noreferrer"}:
            unsafe.append(a.get("href") or "")
    if unsafe:
        return Finding("improve", {"links": unsafe[:50], "count": len(unsafe)},
                       "Links opening a new tab should use rel=\"noopener\" or rel=\"noreferrer\".")
    return Finding("passed", {"links": [], "count": 0}, "No unsafe cross-origin links.")


# Keywords

def _ngrams(words: list[str], n: int) -> list[str]:
    return [" ".join(words[i:i + n]) for i in range(len(words) - n + 1)]


@check("keyword_cloud")
def keyword_cloud(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    words = keyword_words(visible_text(soup_of(page)))
    total_words = len(words)
    cloud: dict[str, list[dict[str, Any]]] = {}
    overused: list[str] = []

    for n, name in ((1, "unigrams"), (2, "bigrams"), (3, "trigrams")):
        counts = Counter(_ngrams(words, n))
        kept = [(phrase, c) for phrase, c in counts.most_common() if c >= 2][:15]
        entries = []
        for phrase, c in kept:
            density = round(c / total_words * 100, 2) if total_words else 0
            entries.append({"phrase": phrase, "count": c, "density": density})
            if c > 5 and density > 5:
                overused.append(phrase)
        cloud[name] = entries

    payload = {**cloud, "total_words": total_words, "overused": overused}
    if not total_words:
        return Finding("improve", payload, "Not enough text content to build a keyword cloud.")
    if overused:
        return Finding("improve", payload, f"Possible keyword stuffing: {', '.join(overused[:5])}.")
    return Finding("passed", payload, "Keyword usage looks natural.")


@check("keyword_consistency")
def keyword_consistency(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    soup = soup_of(page)
    title = (_text(soup.title) if soup.title else "").lower()
    description = _meta_content(soup, "description").lower()
    heading_text = " ".join(_text(h) for h in soup.find_all(re.compile(r"^h[1-6]$"))).lower()

    top = Counter(keyword_words(visible_text(soup))).most_common(10)
    keywords = []
    common = []
    for word, count in top:
        presence = {
            "title": bool(re.search(rf"\b{re.escape(word)}\b", title)),
            "description": bool(re.search(rf"\b{re.escape(word)}\b", description)),
            "headings": bool(re.search(rf"\b{re.escape(word)}\b", heading_text)),
        }
        keywords.append({"keyword": word, "count": count, **presence})
        if sum(presence.values()) >= 2:
            common.append(word)

    payload = {"keywords": keywords, "common": common}
    if common:
        return Finding("passed", payload, f"Main keywords are used consistently: {', '.join(common)}.")
    return Finding("improve", payload, "The most frequent words do not appear in the title, description and headings.")


# Structured data

def _walk_jsonld(data: Any) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    if isinstance(data, list):
        for x in data:
            items.extend(_walk_jsonld(x))
    elif isinstance(data, dict):
        if "@graph" in data:
            items.extend(_walk_jsonld(data["@graph"]))
        if "@type" in data:
            items.append(data)
    return items


def _types_of(item: dict[str, Any]) -> list[str]:
    t = item.get("@type")
    if isinstance(t, list):
        return [str(x) for x in t]
    return [str(t)] if t else []


def _jsonld_items(soup: BeautifulSoup) -> tuple[list[dict[str, Any]], int]:
    items: list[dict[str, Any]] = []
    invalid = 0
    for script in soup.find_all("script", attrs={"type": re.compile(r"application/ld\+json", re.I)}):
        raw = script.string or script.get_text() or ""
        try:
            data = json.loads(raw)
        except ValueError:
            invalid += 1
            continue
        items.extend(_walk_jsonld(data))
    return items, invalid


def _microdata_items(soup: BeautifulSoup) -> list[Tag]:
    return soup.find_all(attrs={"itemscope": True, "itemtype": True})


def _microdata_type(tag: Tag) -> str:
    itemtype = tag.get("itemtype") or ""
    if isinstance(itemtype, list):
        itemtype = itemtype[0] if itemtype else ""
    return itemtype.rstrip("/").split("/")[-1]


@check("schema")
def schema(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    soup = soup_of(page)
    items, invalid = _jsonld_items(soup)
    json_ld_types = sorted({t for item in items for t in _types_of(item)})
    microdata_types = sorted({_microdata_type(t) for t in _microdata_items(soup)} - {""})

    payload = {"json_ld": json_ld_types, "microdata": microdata_types, "invalid_json_ld_blocks": invalid}
    if json_ld_types or microdata_types:
        return Finding("passed", payload, f"Structured data found: {', '.join(json_ld_types + microdata_types)}.")
    return Finding("improve", payload, "No structured data (JSON-LD or microdata) found.")


SCHEMA_REQUIRED_FIELDS = {
    "Article": ("headline", "datePublished"),
    "NewsArticle": ("headline", "datePublished"),
    "BlogPosting": ("headline", "datePublished"),
    "Product": ("name",),
    "Organization": ("name",),
    "LocalBusiness": ("name", "address"),
    "BreadcrumbList": ("itemListElement",),
}


@check("schema_validation")
def schema_validation(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    soup = soup_of(page)
    items, invalid = _jsonld_items(soup)
    results = []

    for item in items:
        for t in _types_of(item):
            missing = [f for f in SCHEMA_REQUIRED_FIELDS.get(t, ()) if not item.get(f)]
            results.append({"type": t, "source": "json-ld", "missing": missing})

    for tag in _microdata_items(soup):
        t = _microdata_type(tag)
        missing = [f for f in SCHEMA_REQUIRED_FIELDS.get(t, ()) if tag.find(attrs={"itemprop": f}) is None]
        results.append({"type": t, "source": "microdata", "missing": missing})

    errors = [r for r in results if r["missing"]]
    payload = {"items": results, "errors": errors, "invalid_json_ld_blocks": invalid}
    if not results:
        return Finding("improve", payload, "No structured data items to validate.")
    if errors or invalid:
        return Finding("improve", payload, f"{len(errors) + invalid} structured data item(s) are incomplete or invalid.")
    return Finding("passed", payload, f"Detected {len(results)} valid structured data item(s).")


# Social tags

OPEN_GRAPH_FIELDS = {
    "title": "The title of your page as it should appear when shared.",
    "description": "A one to two sentence description of the page.",
    "image": "The image shown when the page is shared. Use at least 1200x630.",
    "url": "The canonical URL of the page.",
    "site_name": "The name of the overall site.",
    "type": "The type of object, for example website or article.",
    "locale": "The locale of the content, for example en_US.",
}

TWITTER_FIELDS = {
    "card": "The card type, for example summary_large_image.",
    "site": "The @username of the website.",
    "creator": "The @username of the content creator.",
}


def _social_tags(soup: BeautifulSoup, prefix: str) -> dict[str, str]:
    found: dict[str, str] = {}
    for meta in soup.find_all("meta"):
        key = (meta.get("property") or meta.get("name") or "").strip().lower()
        if key.startswith(prefix + ":"):
            found.setdefault(key[len(prefix) + 1:], (meta.get("content") or "").strip())
    return found


def _completeness(found: dict[str, str], required: dict[str, str], label: str) -> Finding:
    missing = {f: hint for f, hint in required.items() if not found.get(f)}
    payload = {"found": found, "missing": missing}
    if missing:
        return Finding("improve", payload, f"{label} is missing: {', '.join(missing)}.")
    return Finding("passed", payload, f"All required {label} tags are present.")


@check("open_graph")
def open_graph(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    return _completeness(_social_tags(soup_of(page), "og"), OPEN_GRAPH_FIELDS, "Open Graph")


@check("twitter_cards")
def twitter_cards(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    return _completeness(_social_tags(soup_of(page), "twitter"), TWITTER_FIELDS, "Twitter Card")


# Document basics

@check("mobile_friendly")
def mobile_friendly(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    soup = soup_of(page)
    viewport = soup.find("meta", attrs={"name": re.compile(r"^viewport$", re.I)})
    viewport_content = (viewport.get("content") or "") if viewport else ""
    responsive = any("@media" in style.get_text() for style in soup.find_all("style"))
    responsive = responsive or any("(" in (link.get("media") or "") for link in _links_with_rel(soup, "stylesheet"))

    payload = {"viewport": viewport_content, "has_viewport": viewport is not None, "responsive_css": responsive}
    if viewport is not None and responsive:
        return Finding("passed", payload, "The page declares a viewport and uses responsive CSS.")
    if viewport is None:
        return Finding("improve", payload, "Add a viewport meta tag so the page renders well on mobile.")
    return Finding("improve", payload, "No media queries found; the layout may not adapt to small screens.")


@check("doctype")
def doctype(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    soup = soup_of(page)
    value = next((str(item).strip() for item in soup.contents if isinstance(item, Doctype)), None)
    if value is None:
        return Finding("improve", {"doctype": None}, "The page has no DOCTYPE declaration.")
    if value.lower() == "html":
        return Finding("passed", {"doctype": value}, "The page uses the HTML5 DOCTYPE.")
    return Finding("improve", {"doctype": value}, "Use the HTML5 DOCTYPE (<!DOCTYPE html>).")


_META_CHARSET_RE = re.compile(r"charset\s*=\s*[\"']?([\w-]+)", re.I)


@check("charset")
def charset(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    soup = soup_of(page)
    value, source = None, None
    meta = soup.find("meta", charset=True)
    if meta:
        value, source = meta["charset"], "meta charset"
    else:
        equiv = soup.find("meta", attrs={"http-equiv": re.compile(r"^content-type$", re.I)})
        m = _META_CHARSET_RE.search((equiv.get("content") or "") if equiv else "")
        if m:
            value, source = m.group(1), "meta http-equiv"
    if value is None:
        m = _META_CHARSET_RE.search(page.headers.get("content-type", ""))
        if m:
            value, source = m.group(1), "content-type header"

    payload = {"charset": value, "source": source}
    if value and value.strip().lower() in ("utf-8", "utf8"):
        return Finding("passed", payload, "The page declares UTF-8.")
    if value:
        return Finding("improve", payload, f"The page declares {value}; UTF-8 is recommended.")
    return Finding("improve", payload, "No character encoding declared.")


@check("language")
def language(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    html = soup_of(page).find("html")
    lang = (html.get("lang") or "").strip() if html else ""
    if lang:
        return Finding("passed", {"lang": lang}, f"Language declared as '{lang}'.")
    return Finding("improve", {"lang": None}, "Declare the page language with <html lang=\"...\">.")


def _links_with_rel(soup: BeautifulSoup, rel: str) -> list[Tag]:
    return [link for link in soup.find_all("link") if rel in [r.lower() for r in (link.get("rel") or [])]]


@check("canonical")
def canonical(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    tags = _links_with_rel(soup_of(page), "canonical")
    if tags:
        return Finding("passed", {"href": tags[0].get("href"), "count": len(tags)}, "Canonical tag found.")
    return Finding("improve", {"href": None, "count": 0}, "Add a canonical link tag to avoid duplicate content.")


@check("hreflang")
def hreflang(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    tags = [
        {"hreflang": t.get("hreflang"), "href": t.get("href")}
        for t in _links_with_rel(soup_of(page), "alternate") if t.get("hreflang")
    ]
    if tags:
        return Finding("passed", {"tags": tags}, f"Found {len(tags)} hreflang tag(s).")
    return Finding("improve", {"tags": []}, "No hreflang tags found; add them if the site serves several languages.")


@check("meta_robots")
def meta_robots(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    content = _meta_content(soup_of(page), "robots").lower()
    header = page.headers.get("x-robots-tag", "").lower()
    directives = f"{content},{header}"
    noindex = "noindex" in directives
    nofollow = "nofollow" in directives
    payload = {"content": content, "x_robots_tag": header, "noindex": noindex, "nofollow": nofollow}
    if noindex or nofollow:
        return Finding("improve", payload, "Robots directives prevent indexing or link following.")
    return Finding("passed", payload, "The page can be indexed and followed.")


@check("meta_refresh")
def meta_refresh(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    tag = soup_of(page).find("meta", attrs={"http-equiv": re.compile(r"^refresh$", re.I)})
    if tag:
        return Finding("improve", {"content": tag.get("content")}, "Avoid meta refresh redirects; use a server-side redirect.")
    return Finding("passed", {"content": None}, "No meta refresh found.")


# Content

@check("text_html_ratio")
def text_html_ratio(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    text = visible_text(soup_of(page))
    html_size = len(page.html)
    ratio = round(len(text) / html_size * 100, 2) if html_size else 0
    word_count = len(text.split())
    category = "HTML-heavy" if ratio < 10 else "Balanced" if ratio <= 50 else "Text-heavy"
    payload = {
        "ratio": ratio,
        "category": category,
        "text_length": len(text),
        "html_length": html_size,
        "word_count": word_count,
        "read_time_min": round(word_count / 200, 1),
    }
    if ratio < 2:
        return Finding("error", payload, f"Text to HTML ratio is very low ({ratio}%).")
    if ratio < 10:
        return Finding("improve", payload, f"Text to HTML ratio is low ({ratio}%).")
    return Finding("passed", payload, f"Text to HTML ratio is {ratio}%.")


def count_syllables(word: str) -> int:
    word = word.lower()
    count = len(re.findall(r"[aeiouy]+", word))
    if word.endswith("e"):
        count -= 1
    return max(1, count)


def flesch_reading_ease(text: str) -> tuple[float, int, int, int]:
    sentences = [s for s in re.split(r"[.!?]+", text) if s.strip()]
    words = re.findall(r"[A-Za-z]+", text)
    if not sentences or not words:
        return 0.0, len(words), len(sentences), 0
    syllables = sum(count_syllables(w) for w in words)
    score = 206.835 - 1.015 * (len(words) / len(sentences)) - 84.6 * (syllables / len(words))
    return round(score, 2), len(words), len(sentences), syllables


@check("readability")
def readability(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    score, words, sentences, syllables = flesch_reading_ease(visible_text(soup_of(page)))
    payload = {"flesch_score": score, "words": words, "sentences": sentences, "syllables": syllables}
    if not words:
        return Finding("improve", payload, "Not enough text to measure readability.")
    if score >= 60:
        return Finding("passed", payload, f"Content is easy to read (Flesch {score}).")
    return Finding("improve", payload, f"Content is difficult to read (Flesch {score}); aim for 60 or higher.")


DOM_SIZE_LIMIT = 1500


@check("dom_size")
def dom_size(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    nodes = len(soup_of(page).find_all(True))
    payload = {"nodes": nodes, "limit": DOM_SIZE_LIMIT}
    if nodes <= DOM_SIZE_LIMIT:
        return Finding("passed", payload, f"DOM has {nodes} elements.")
    return Finding("improve", payload, f"DOM has {nodes} elements; keep it under {DOM_SIZE_LIMIT}.")


def _count_check(tags: tuple[str, ...], present_msg: str, absent_msg: str):
    def run(page: FetchedPage, services: SharedServices | None = None) -> Finding:
        soup = soup_of(page)
        counts = {t: len(soup.find_all(t)) for t in tags}
        if sum(counts.values()):
            return Finding("improve", {"counts": counts}, present_msg)
        return Finding("passed", {"counts": counts}, absent_msg)

    return run


check("embedded_objects")(_count_check(
    ("embed", "object", "applet"),
    "The page uses embed/object/applet elements, which many devices cannot render.",
    "No embedded objects found.",
))
check("frameset")(_count_check(("frameset", "frame"), "The page uses frames.", "No frames found."))


@check("iframes")
def iframes(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    srcs = [f.get("src") or "" for f in soup_of(page).find_all("iframe")]
    if srcs:
        return Finding("improve", {"count": len(srcs), "srcs": srcs[:20]}, f"The page embeds {len(srcs)} iframe(s).")
    return Finding("passed", {"count": 0, "srcs": []}, "No iframes found.")


@check("nested_tables")
def nested_tables(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    nested = sum(1 for t in soup_of(page).find_all("table") if t.find_parent("table") is not None)
    if nested:
        return Finding("improve", {"count": nested}, "Nested tables found; use CSS for layout.")
    return Finding("passed", {"count": 0}, "No nested tables.")


@check("render_blocking")
def render_blocking(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    head = soup_of(page).find("head")
    styles: list[str] = []
    scripts: list[str] = []
    if head is not None:
        for link in head.find_all("link", href=True):
            rel = [r.lower() for r in (link.get("rel") or [])]
            if "stylesheet" in rel and (link.get("media") or "all").lower() != "print":
                styles.append(link["href"])
        for script in head.find_all("script", src=True):
            if not script.has_attr("async") and not script.has_attr("defer") and script.get("type") != "module":
                scripts.append(script["src"])

    payload = {"stylesheets": styles, "scripts": scripts, "count": len(styles) + len(scripts)}
    if scripts or styles:
        return Finding("improve", payload, f"{len(styles) + len(scripts)} render-blocking resource(s) in <head>.")
    return Finding("passed", payload, "No render-blocking resources in <head>.")


_EMAIL_RE = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)
_ASSET_SUFFIXES = (".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp", ".js", ".css")


@check("email_privacy")
def email_privacy(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    emails = sorted({e.lower() for e in _EMAIL_RE.findall(page.html) if not e.lower().endswith(_ASSET_SUFFIXES)})
    if emails:
        return Finding("improve", {"emails": emails}, "Plain-text email addresses are exposed to spam harvesters.")
    return Finding("passed", {"emails": []}, "No plain-text email addresses found.")


ANALYTICS_PATTERNS = {
    "Google Analytics (analytics.js)": re.compile(r"google-analytics\.com/analytics\.js", re.I),
    "Google Analytics 4 (gtag.js)": re.compile(r"gtag\(|googletagmanager\.com/gtag/js", re.I),
    "Google Analytics (ga create)": re.compile(r"ga\(\s*['\"]create['\"]", re.I),
    "Google Tag Manager": re.compile(r"googletagmanager\.com/gtm\.js", re.I),
    "Legacy Google Analytics (ga.js)": re.compile(r"_gaq\.push|google-analytics\.com/ga\.js", re.I),
    "Meta Pixel": re.compile(r"connect\.facebook\.net/[^\"']*/fbevents\.js|fbq\(", re.I),
}


@check("analytics")
def analytics(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    found = [name for name, rx in ANALYTICS_PATTERNS.items() if rx.search(page.html)]
    if found:
        return Finding("passed", {"trackers": found}, f"Analytics detected: {', '.join(found)}.")
    return Finding("improve", {"trackers": []}, "No analytics tool detected.")


TECHNOLOGY_HTML_PATTERNS = {
    "WordPress": re.compile(r"wp-content|wp-includes", re.I),
    "Joomla": re.compile(r"/media/jui/|content=\"Joomla", re.I),
    "Drupal": re.compile(r"Drupal\.settings|/sites/default/files", re.I),
    "Magento": re.compile(r"Mage\.Cookies|/static/version\d+", re.I),
    "Shopify": re.compile(r"cdn\.shopify\.com|Shopify\.theme", re.I),
}

TECHNOLOGY_HEADER_PATTERNS = {
    "Nginx": ("server", re.compile(r"nginx", re.I)),
    "Apache": ("server", re.compile(r"apache", re.I)),
    "IIS": ("server", re.compile(r"microsoft-iis", re.I)),
    "PHP": ("x-powered-by", re.compile(r"php", re.I)),
    "Node.js": ("x-powered-by", re.compile(r"node", re.I)),
    "Express.js": ("x-powered-by", re.compile(r"express", re.I)),
}


@check("technologies")
def technologies(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    detected = [name for name, rx in TECHNOLOGY_HTML_PATTERNS.items() if rx.search(page.html)]
    for name, (header, rx) in TECHNOLOGY_HEADER_PATTERNS.items():
        if any(rx.search(v) for v in page.headers.get_list(header)):
            detected.append(name)
    return Finding(
        "passed",
        {"detected": detected},
        f"Detected: {', '.join(detected)}." if detected else "No well-known technology detected.",
    )


SOCIAL_PLATFORMS = {
    "facebook": ("facebook.com",),
    "twitter": ("twitter.com", "x.com"),
    "instagram": ("instagram.com",),
    "linkedin": ("linkedin.com",),
    "youtube": ("youtube.com",),
    "pinterest": ("pinterest.com",),
    "tiktok": ("tiktok.com",),
    "github": ("github.com",),
}


@check("social_links")
def social_links(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    found: dict[str, list[str]] = {}
    for a in soup_of(page).find_all("a", href=True):
        parsed = urlparse(urljoin(page.url, a["href"].strip()))
        host = (parsed.hostname or "").lower()
        # A bare platform link (no profile path) is not a profile.
        if parsed.path.strip("/") == "":
            continue
        for platform, domains in SOCIAL_PLATFORMS.items():
            if any(host == d or host.endswith("." + d) for d in domains):
                urls = found.setdefault(platform, [])
                if a["href"] not in urls:
                    urls.append(a["href"])
    if found:
        return Finding("passed", {"profiles": found}, f"Social profiles linked: {', '.join(found)}.")
    return Finding("improve", {"profiles": {}}, "No social media profiles linked from the page.")


_LANDMARK_ROLES = {"header": "banner", "nav": "navigation", "main": "main", "footer": "contentinfo"}
_UNLABELED_INPUT_TYPES = {"hidden", "submit", "button", "image", "reset"}


@check("accessibility")
def accessibility(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    soup = soup_of(page)
    landmarks = {
        tag: soup.find(tag) is not None or soup.find(attrs={"role": role}) is not None
        for tag, role in _LANDMARK_ROLES.items()
    }

    label_for = {lbl.get("for") for lbl in soup.find_all("label") if lbl.get("for")}
    unlabeled = []
    total_inputs = 0
    for field in soup.find_all(["input", "select", "textarea"]):
        if field.name == "input" and (field.get("type") or "text").lower() in _UNLABELED_INPUT_TYPES:
            continue
        total_inputs += 1
        if field.get("id") in label_for or field.find_parent("label") is not None:
            continue
        if field.get("aria-label") or field.get("aria-labelledby") or field.get("title"):
            continue
        unlabeled.append({"tag": field.name, "name": field.get("name") or "", "id": field.get("id") or ""})

    missing = [k for k, ok in landmarks.items() if not ok]
    payload = {"landmarks": landmarks, "missing_landmarks": missing, "form_fields": total_inputs, "unlabeled": unlabeled}
    if not missing and not unlabeled:
        return Finding("passed", payload, "Landmarks are present and every form field is labeled.")
    notes = []
    if missing:
        notes.append(f"Missing landmarks: {', '.join(missing)}.")
    if unlabeled:
        notes.append(f"{len(unlabeled)} form field(s) have no label.")
    return Finding("improve", payload, " ".join(notes))


CDN_HOSTS = (
    "cloudflare.com",
    "akamaihd.net",
    "cdn.jsdelivr.net",
    "stackpath.bootstrapcdn.com",
    "maxcdn.bootstrapcdn.com",
    "cdnjs.cloudflare.com",
    "fastly.net",
    "cloudfront.net",
)


@check("cdn_usage")
def cdn_usage(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    hosts = set()
    for tag in soup_of(page).find_all(["script", "link", "img"]):
        ref = tag.get("src") or tag.get("href") or ""
        host = host_of(urljoin(page.url, ref)) if ref else ""
        if any(host == c or host.endswith("." + c) for c in CDN_HOSTS):
            hosts.add(host)
    if hosts:
        return Finding("passed", {"cdn_hosts": sorted(hosts)}, "Static assets are served from a CDN.")
    return Finding("improve", {"cdn_hosts": []}, "No CDN detected for static assets.")


# URL and response

HOST_WORD_MAX_LEN = 15


@check("url_length")
def url_length(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    parsed = urlparse(page.url)
    host = host_of(page.url)
    bare = host[len("www."):] if host.startswith("www.") else host
    host_word = bare.split(".")[0]
    payload = {
        "full_url": f"{parsed.scheme}://{host}",
        "host_word": host_word,
        "length": len(host_word),
        "url_length": len(page.url),
    }
    if len(host_word) < HOST_WORD_MAX_LEN:
        return Finding("passed", payload, f"The domain name '{host_word}' is {len(host_word)} characters long.")
    return Finding(
        "improve", payload,
        f"The domain name '{host_word}' is {len(host_word)} characters long; "
        f"keep it under {HOST_WORD_MAX_LEN}.",
    )


PAGE_SIZE_MAX_KB = 320
LOAD_TIME_MAX_S = 1.0

_CONTENT_LANGUAGE_RE = re.compile(
    r"<meta[^>]+http-equiv=['\"]?content-language['\"]?[^>]+content=['\"]?([^'\">\s]+)", re.I
)


def _detected_language(page: FetchedPage, soup: BeautifulSoup) -> str | None:
    html = soup.find("html")
    lang = (html.get("lang") or "").strip() if html else ""
    if not lang:
        m = _CONTENT_LANGUAGE_RE.search(page.html)
        lang = m.group(1).strip() if m else page.headers.get("content-language", "").strip()
    return lang[:5] or None


@check("page_size_load")
def page_size_load(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    size_bytes = len(page.html.encode("utf-8"))
    size_kb = round(size_bytes / 1024, 2)
    load_s = page.elapsed_s
    payload = {
        "size_bytes": size_bytes,
        "size_kb": size_kb,
        "load_time_s": load_s,
        "language": _detected_language(page, soup_of(page)),
    }
    problems = []
    if size_kb >= PAGE_SIZE_MAX_KB:
        problems.append(f"the HTML is {size_kb} KB (aim for under {PAGE_SIZE_MAX_KB} KB)")
    if load_s is not None and load_s >= LOAD_TIME_MAX_S:
        problems.append(f"it took {load_s}s to download (aim for under {LOAD_TIME_MAX_S:g}s)")
    if problems:
        return Finding("improve", payload, "Reduce page weight or load time: " + "; ".join(problems) + ".")
    timing = f" and loaded in {load_s}s" if load_s is not None else ""
    return Finding("passed", payload, f"The HTML is {size_kb} KB{timing}.")


@check("url_rewrite")
def url_rewrite(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    query = urlparse(page.url).query
    if query:
        return Finding("improve", {"url": page.url, "query": query}, "The URL carries a query string; prefer clean URLs.")
    return Finding("passed", {"url": page.url, "query": ""}, "The URL is clean.")


@check("underscores_in_url")
def underscores_in_url(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    path = urlparse(page.url).path
    if "_" in path:
        return Finding("improve", {"url": page.url}, "Use hyphens instead of underscores in URLs.")
    return Finding("passed", {"url": page.url}, "No underscores in the URL.")


@check("directory_browsing")
def directory_browsing(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    listed = bool(re.search(r"<title>\s*Index of\b|<h1>\s*Index of /", page.html, re.I))
    if listed:
        return Finding("improve", {"listing": True}, "Directory listing is enabled.")
    return Finding("passed", {"listing": False}, "Directory listing is not exposed.")


@check("page_cache")
def page_cache(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    cache_control = page.headers.get("cache-control", "")
    cached = "max-age" in cache_control.lower() or "public" in cache_control.lower()
    payload = {"cache_control": cache_control, "expires": page.headers.get("expires", "")}
    if cached:
        return Finding("passed", payload, "The page sends caching headers.")
    return Finding("improve", payload, "Add a Cache-Control header with max-age or public.")


SECURITY_HEADERS = {
    "content-security-policy": "Content-Security-Policy",
    "x-frame-options": "X-Frame-Options",
    "x-xss-protection": "X-XSS-Protection",
    "strict-transport-security": "Strict-Transport-Security",
    "x-content-type-options": "X-Content-Type-Options",
}


@check("security_headers")
def security_headers(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    present = {label: page.headers.get(name) for name, label in SECURITY_HEADERS.items() if name in page.headers}
    missing = [label for name, label in SECURITY_HEADERS.items() if name not in page.headers]
    payload = {"present": present, "missing": missing}
    if len(present) >= 3:
        return Finding("passed", payload, f"{len(present)} of {len(SECURITY_HEADERS)} security headers are set.")
    return Finding("improve", payload, f"Missing security headers: {', '.join(missing)}.")


_VERSION_RE = re.compile(r"\d+(\.\d+)+")


@check("server_signature")
def server_signature(page: FetchedPage, services: SharedServices | None = None) -> Finding:
    server = page.headers.get("server", "")
    powered_by = page.headers.get("x-powered-by", "")
    payload = {"server": server, "x_powered_by": powered_by}
    if _VERSION_RE.search(server) or _VERSION_RE.search(powered_by):
        return Finding("improve", payload, "Response headers reveal server software versions.")
    return Finding("passed", payload, "No server version is disclosed.")
