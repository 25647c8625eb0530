import re
from typing import Iterable, List, Optional, Tuple

import soupsieve
from bs4 import BeautifulSoup

from .schemas import ExtractionPlan, ExtractionResult, UiElement


EMAIL_RE = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)
_STRICT_EMAIL_RE = re.compile(r"^[a-z0-9._%+-]+@[a-z0-9.-]+\.[a-z]{2,}$")
_COUNT_RE = re.compile(r"(\d+)\s*(?:products?|product names?|emails?|items?)", re.IGNORECASE)
_UI_NOISE_RE = re.compile(
    r"^(add to cart|quick view|view details|view product|choose options|select options|in stock|out of stock|"
    r"sold out|sale|new|buy now|learn more|load more|show more|filters?|sort by)$",
    re.IGNORECASE,
)
DEFAULT_SELECTORS = [
    "h1",
    "h2",
    "h3",
    "[class*='title' i]",
    "[class*='name' i]",
    "[class*='heading' i]",
]
MAX_ITEMS = 100
MAX_INVENTORY = 60
INVENTORY_SELECTOR = "a[href], button, input, textarea, select, [role=button], [role=link], form, h1, h2, h3"
_TEST_ID_ATTRS = ("data-testid", "data-test", "data-qa")


def detect_target(task: str) -> Tuple[Optional[str], Optional[int]]:
    """Guess what an extraction task wants from its wording: (target, requested count)."""
    wants = bool(re.search(r"\b(extract|collect|find|list|get)\b", task, re.IGNORECASE))
    if not wants:
        return None, None
    match = _COUNT_RE.search(task)
    count = int(match.group(1)) if match else None
    if re.search(r"email", task, re.IGNORECASE):
        return "emails", count
    if re.search(r"product", task, re.IGNORECASE):
        return "product_names", count
    return "items", count


def normalize_names(items: Iterable[str]) -> List[str]:
    seen = set()
    names: List[str] = []
    for raw in items:
        item = " ".join(raw.split())
        if not item or not re.search(r"[a-z]", item, re.IGNORECASE):
            continue
        if re.fullmatch(r"[a-f0-9]{16,}", item, re.IGNORECASE):
            continue
        if re.fullmatch(r"\$?\d+(?:\.\d+)?", item) or _UI_NOISE_RE.match(item):
            continue
        key = item.lower()
        if key in seen:
            continue
        seen.add(key)
        names.append(item)
    return names


def normalize_emails(items: Iterable[str]) -> List[str]:
    seen = set()
    emails: List[str] = []
    for raw in items:
        item = raw.strip().lower()
        if not _STRICT_EMAIL_RE.match(item) or item in seen:
            continue
        seen.add(item)
        emails.append(item)
    return emails


def _select_texts(soup: BeautifulSoup, selector: str) -> List[str]:
    try:
        nodes = soup.select(selector)
    except soupsieve.SelectorSyntaxError:
        return []
    return [node.get_text(" ", strip=True) for node in nodes]


def _emails_from(soup: Optional[BeautifulSoup], dom_text: str) -> List[str]:
    found: List[str] = []
    if soup is not None:
        for link in soup.select("a[href^='mailto:']"):
            found.append(link["href"][len("mailto:"):].split("?", 1)[0])
        found.extend(EMAIL_RE.findall(soup.get_text(" ")))
    found.extend(EMAIL_RE.findall(dom_text or ""))
    return normalize_emails(found)


def extract_items(
    plan: ExtractionPlan,
    html: str = "",
    dom_text: str = "",
    source_url: Optional[str] = None,
    count: Optional[int] = None,
) -> ExtractionResult:
    """Run the extraction plan over a page; an empty result is still a valid, completed outcome."""
    soup = BeautifulSoup(html, "html.parser") if html else None
    fields = plan.fields or (["email"] if plan.target == "emails" else ["name"])
    selectors_used: List[str] = []
    values: List[str] = []

    if plan.target == "emails":
        values = _emails_from(soup, dom_text)
        selectors_used.append("mailto/regex")
    elif soup is not None:
        for group in (plan.primary_selectors, plan.fallback_selectors, DEFAULT_SELECTORS):
            for selector in group:
                texts = normalize_names(_select_texts(soup, selector))
                if texts:
                    selectors_used.append(selector)
                    values.extend(texts)
            if values:
                break
        values = normalize_names(values)

    limit = count if count and count > 0 else MAX_ITEMS
    values = values[:limit]
    return ExtractionResult(
        target=plan.target,
        fields=fields,
        items=[{fields[0]: value} for value in values],
        outcome="results" if values else "no_results",
        selectors_used=selectors_used,
        source_urls=[source_url] if source_url else [],
    )


def _css_path(el) -> str:
    parts: List[str] = []
    node = el
    while node is not None and node.name not in (None, "[document]", "html"):
        if node.get("id"):
            parts.insert(0, "#" + soupsieve.escape(node["id"]))
            break
        part = node.name
        test_attr = next((a for a in _TEST_ID_ATTRS if node.get(a)), None)
        if node.get("name"):
            part += '[name="%s"]' % node["name"].replace('"', '\\"')
        elif test_attr:
            part += '[%s="%s"]' % (test_attr, node[test_attr].replace('"', '\\"'))
        parent = node.parent
        if parent is not None:
            same = parent.find_all(node.name, recursive=False)
            if len(same) > 1:
                index = next(i for i, sibling in enumerate(same) if sibling is node)
                part += f":nth-of-type({index + 1})"
        parts.insert(0, part)
        node = parent
    return " > ".join(parts)


def _hidden(el) -> bool:
    if el.name == "input" and (el.get("type") or "").lower() == "hidden":
        return True
    style = (el.get("style") or "").replace(" ", "").lower()
    return el.has_attr("hidden") or "display:none" in style


def inventory_from_html(html: str, limit: int = MAX_INVENTORY) -> List[UiElement]:
    """Interactive elements and headings of a page, each with a selector the actuator can reuse."""
    soup = BeautifulSoup(html or "", "html.parser")
    items: List[UiElement] = []
    for el in soup.select(INVENTORY_SELECTOR):
        if _hidden(el):
            continue
        text = el.get_text(" ", strip=True)[:160] or el.get("aria-label") or el.get("value") or None
        items.append(
            UiElement(
                tag=el.name,
                selector=_css_path(el),
                text=text,
                role=el.get("role"),
                type=el.get("type"),
                name=el.get("name"),
                placeholder=el.get("placeholder"),
                href=el.get("href"),
            )
        )
        if len(items) >= limit:
            break
    return items
