import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import httpx

from .schemas import PlanStep, RunPreferences


logger = logging.getLogger("uvicorn.error")

RISKY_STEP_RE = re.compile(
    r"\b(login|log in|sign in|signup|sign up|register|checkout|purchase|pay|payment|card|delete|remove|cancel|"
    r"unsubscribe|transfer|withdraw|submit order|place order|invoice|billing|confirm|approve|admin)\b",
    re.IGNORECASE,
)

RiskPredicate = Callable[[PlanStep], bool]


def keyword_risk(step: PlanStep) -> bool:
    """Default risk predicate: destructive or irreversible wording in the step."""
    if step.tool == "none":
        return False
    text = " ".join(part for part in (step.title, step.expected_observation or "", step.selector or "") if part)
    return bool(RISKY_STEP_RE.search(text))


@dataclass
class RobotsRules:
    allow: List[str] = field(default_factory=list)
    disallow: List[str] = field(default_factory=list)

    def is_allowed(self, path: str) -> bool:
        best_len = -1
        allowed = True
        for rule in self.disallow:
            if rule and path.startswith(rule) and len(rule) > best_len:
                best_len = len(rule)
                allowed = False
        for rule in self.allow:
            # Allow wins ties against Disallow of equal length.
            if path.startswith(rule) and len(rule) >= best_len:
                best_len = len(rule)
                allowed = True
        return allowed


def parse_robots(text: str, user_agent: str = "webpilot") -> RobotsRules:
    """Pick the group naming our agent, else the `*` group, and collect its rules."""
    groups: List[Tuple[List[str], RobotsRules]] = []
    agents: List[str] = []
    rules: Optional[RobotsRules] = None
    last_was_agent = False
    for raw in text.splitlines():
        line = raw.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue
        key, value = line.split(":", 1)
        key = key.strip().lower()
        value = value.strip()
        if key == "user-agent":
            if not last_was_agent:
                agents = []
                rules = RobotsRules()
                groups.append((agents, rules))
            agents.append(value.lower())
            last_was_agent = True
            continue
        last_was_agent = False
        if rules is None:
            continue
        if key == "disallow":
            if value:
                rules.disallow.append(value)
        elif key == "allow":
            rules.allow.append(value)
    token = user_agent.lower()
    specific = [r for names, r in groups if any(name != "*" and name in token for name in names)]
    if specific:
        chosen = specific
    else:
        chosen = [r for names, r in groups if "*" in names]
    merged = RobotsRules()
    for r in chosen:
        merged.allow.extend(r.allow)
        merged.disallow.extend(r.disallow)
    return merged


@dataclass
class NavigationVerdict:
    url: str
    verdict: str  # allowed | blocked | unknown
    reason: Optional[str] = None
    overridden: bool = False

    @property
    def permitted(self) -> bool:
        return self.verdict != "blocked" or self.overridden


@dataclass
class ApprovalVerdict:
    requires_approval: bool
    reason: Optional[str] = None


class PolicyGuard:
    def __init__(
        self,
        *,
        user_agent: str = "webpilot",
        timeout_s: float = 8.0,
        cache_ttl_s: int = 900,
        risk_predicate: Optional[RiskPredicate] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.user_agent = user_agent
        self.cache_ttl_s = cache_ttl_s
        self.risk_predicate = risk_predicate or keyword_risk
        self.client = client or httpx.AsyncClient(
            timeout=timeout_s,
            follow_redirects=True,
            headers={"User-Agent": user_agent},
        )
        self._cache: Dict[str, Tuple[float, Optional[RobotsRules], Optional[str]]] = {}

    async def _rules_for(self, origin: str) -> Tuple[Optional[RobotsRules], Optional[str]]:
        cached = self._cache.get(origin)
        now = time.monotonic()
        if cached and now - cached[0] < self.cache_ttl_s:
            return cached[1], cached[2]
        rules: Optional[RobotsRules] = None
        caveat: Optional[str] = None
        try:
            resp = await self.client.get(f"{origin}/robots.txt")
            if resp.status_code >= 400:
                caveat = f"robots.txt unavailable (HTTP {resp.status_code})"
            else:
                rules = parse_robots(resp.text, self.user_agent)
        except httpx.RequestError as exc:
            caveat = f"robots.txt lookup failed: {exc}"
        if caveat:
            logger.info("Policy lookup for %s: %s", origin, caveat)
        self._cache[origin] = (now, rules, caveat)
        return rules, caveat

    async def check_navigation(self, url: str, preferences: RunPreferences) -> NavigationVerdict:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            return NavigationVerdict(url=url, verdict="unknown", reason="not an http(s) url")
        origin = f"{parsed.scheme}://{parsed.netloc}"
        rules, caveat = await self._rules_for(origin)
        if rules is None:
            return NavigationVerdict(url=url, verdict="unknown", reason=caveat)
        path = parsed.path or "/"
        if parsed.query:
            path = f"{path}?{parsed.query}"
        if rules.is_allowed(path):
            return NavigationVerdict(url=url, verdict="allowed")
        return NavigationVerdict(
            url=url,
            verdict="blocked",
            reason="disallowed by robots.txt",
            overridden=preferences.ignore_robots_txt,
        )

    def check_approval(
        self,
        step: PlanStep,
        preferences: RunPreferences,
        policy_overridden: bool = False,
    ) -> ApprovalVerdict:
        if not preferences.require_human_approval:
            return ApprovalVerdict(requires_approval=False)
        if step.tool == "none":
            return ApprovalVerdict(requires_approval=False)
        if policy_overridden:
            return ApprovalVerdict(requires_approval=True, reason="navigation overrides robots.txt")
        if self.risk_predicate(step):
            return ApprovalVerdict(requires_approval=True, reason="step flagged as risky")
        return ApprovalVerdict(requires_approval=False)

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
