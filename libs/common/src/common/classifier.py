"""
Heuristic job-posting URL classification.

Company extraction is an ordered table of ``ExtractionRule`` entries.  The
first rule whose predicate accepts the URL decides the outcome: its
extractor either returns a company name, or ``None`` in which case the rule
falls back to its fixed placeholder (or, without one, lets the next rule
try).  Every step is pure; nothing here performs I/O.
"""
from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date
from urllib.parse import parse_qs, urlsplit

from common.utils import normalize_whitespace, today_key

UNKNOWN_COMPANY = "Unknown Company"
REJECTED_COMPANIES = frozenset({UNKNOWN_COMPANY, "Com"})
DEFAULT_TITLE = "Software Engineer"

ROLE_STOPWORDS = frozenset(
    {"software", "engineer", "developer", "senior", "junior", "lead", "staff", "principal"}
)
QUERY_STOPWORDS = frozenset({"software", "engineer", "developer", "senior", "junior", "at"})

KNOWN_COMPANIES = {
    "google": "Google",
    "meta": "Meta",
    "facebook": "Meta",
    "microsoft": "Microsoft",
    "amazon": "Amazon",
    "apple": "Apple",
    "netflix": "Netflix",
    "uber": "Uber",
    "airbnb": "Airbnb",
    "twitter": "Twitter",
    "spotify": "Spotify",
    "stripe": "Stripe",
    "shopify": "Shopify",
    "salesforce": "Salesforce",
    "adobe": "Adobe",
    "intel": "Intel",
    "nvidia": "NVIDIA",
    "tesla": "Tesla",
    "paypal": "PayPal",
    "zoom": "Zoom",
    "slack": "Slack",
    "dropbox": "Dropbox",
    "palantir": "Palantir",
    "snowflake": "Snowflake",
    "databricks": "Databricks",
    "com": UNKNOWN_COMPANY,
}

# First match wins, so broader patterns listed earlier shadow later ones.
TITLE_PATTERNS: tuple[tuple[str, str], ...] = (
    ("software-engineer", "Software Engineer"),
    ("frontend-developer", "Frontend Developer"),
    ("backend-developer", "Backend Developer"),
    ("full-stack", "Full Stack Developer"),
    ("senior-software", "Senior Software Engineer"),
    ("staff-engineer", "Staff Engineer"),
    ("principal-engineer", "Principal Engineer"),
    ("data-scientist", "Data Scientist"),
    ("product-manager", "Product Manager"),
    ("engineering-manager", "Engineering Manager"),
    ("devops", "DevOps Engineer"),
    ("mobile-developer", "Mobile Developer"),
    ("react-developer", "React Developer"),
    ("python-developer", "Python Developer"),
    ("java-developer", "Java Developer"),
)

DEFAULT_LOCATION = "Remote / On-site"
DEFAULT_JOB_TYPE = "Full-time"
DEFAULT_POSTED_DATE = "Recently posted"


class ClassificationError(ValueError):
    """Base class for failures that must be reported back to the user."""


class InvalidJobUrlError(ClassificationError):
    def __init__(self) -> None:
        super().__init__("Invalid URL: must be an absolute http:// or https:// URL")


class UnidentifiedCompanyError(ClassificationError):
    def __init__(self) -> None:
        super().__init__(
            "Unable to identify company name from this URL. "
            "Please ensure the URL is from a supported job site."
        )


@dataclass(frozen=True)
class ParsedUrl:
    host: str
    path: str
    query: dict[str, list[str]]

    def param(self, name: str) -> str | None:
        values = self.query.get(name)
        if not values or not values[0].strip():
            return None
        return values[0]

    @property
    def segments(self) -> list[str]:
        return [segment for segment in self.path.split("/") if segment]


@dataclass(frozen=True)
class ExtractionRule:
    name: str
    matches: Callable[[ParsedUrl], bool]
    extract: Callable[[ParsedUrl], str | None]
    fallback: str | None = None


@dataclass(frozen=True)
class ExtractionResult:
    company: str
    title: str


@dataclass(frozen=True)
class JobAnalysis:
    url: str
    duplicate: bool
    extraction: ExtractionResult | None = None

    def job_fields(self, today: date | None = None) -> dict[str, str]:
        if self.extraction is None:
            raise ValueError("Duplicate analyses carry no extracted fields.")
        company = self.extraction.company
        title = self.extraction.title
        return {
            "url": self.url,
            "title": title,
            "company": company,
            "location": DEFAULT_LOCATION,
            "type": DEFAULT_JOB_TYPE,
            "description": (
                f"Join {company} as a {title}. We are looking for passionate developers "
                "to help build innovative solutions and drive our technology forward."
            ),
            "posted_date": DEFAULT_POSTED_DATE,
            "analyzed_date": today_key(today),
        }


def title_case(text: str) -> str:
    spaced = text.replace("-", " ")
    return re.sub(r"(^|\s)(\S)", lambda match: match.group(1) + match.group(2).upper(), spaced)


def is_valid_url(raw: str) -> bool:
    try:
        parts = urlsplit(raw.strip())
        return parts.scheme in ("http", "https") and bool(parts.hostname)
    except (AttributeError, ValueError):
        return False


def normalize_job_url(url: str) -> str:
    return url.strip().lower().removesuffix("/")


def is_duplicate(candidate_url: str, existing_urls: Iterable[str | None]) -> bool:
    candidate = normalize_job_url(candidate_url)
    return any(
        existing is not None and normalize_job_url(existing) == candidate
        for existing in existing_urls
    )


def parse_url(url: str) -> ParsedUrl | None:
    parts = urlsplit(url.strip())
    host = (parts.hostname or "").lower()
    if not parts.scheme or not host:
        return None
    return ParsedUrl(
        host=host.removeprefix("www."),
        path=parts.path.lower(),
        query=parse_qs(parts.query.lower()),
    )


def _path_after(parsed: ParsedUrl, marker: str) -> str | None:
    match = re.search(rf"/{marker}/([^/?]+)", parsed.path)
    return match.group(1) if match else None


def _first_words(words: Iterable[str], stopwords: frozenset[str]) -> str | None:
    kept = [
        word
        for word in words
        if len(word) > 2 and word.lower() not in stopwords and not word.isdigit()
    ]
    if not kept:
        return None
    name = title_case(" ".join(kept[:2]))
    return name if len(name) > 2 else None


def _on_domain(host: str, domain: str) -> bool:
    return host == domain or host.endswith(f".{domain}")


def _linkedin(parsed: ParsedUrl) -> str | None:
    company_slug = _path_after(parsed, "company")
    if company_slug:
        return title_case(company_slug)
    job_slug = _path_after(parsed, "jobs/view")
    if job_slug:
        return _first_words(job_slug.split("-"), ROLE_STOPWORDS)
    return None


def _indeed(parsed: ParsedUrl) -> str | None:
    company = parsed.param("cmp")
    if company:
        return title_case(normalize_whitespace(company))
    query = parsed.param("q")
    if query:
        return _first_words(query.split(), QUERY_STOPWORDS)
    return None


def _glassdoor(parsed: ParsedUrl) -> str | None:
    slug = _path_after(parsed, "jobs") or _path_after(parsed, "company")
    if slug:
        return title_case(slug)
    employer = parsed.param("employer")
    if employer:
        return title_case(normalize_whitespace(employer))
    return None


def _hosted_board(parsed: ParsedUrl, domain: str, shared_labels: frozenset[str]) -> str | None:
    match = re.match(rf"^([^.]+)\.(?:[^.]+\.)?{re.escape(domain)}$", parsed.host)
    if not match:
        return None
    slug = match.group(1)
    if slug in shared_labels:
        # jobs.lever.co/<company>/..., boards.greenhouse.io/<company>/...
        return title_case(parsed.segments[0]) if parsed.segments else None
    return title_case(slug)


def _lever(parsed: ParsedUrl) -> str | None:
    return _hosted_board(parsed, "lever.co", frozenset({"jobs"}))


def _greenhouse(parsed: ParsedUrl) -> str | None:
    return _hosted_board(parsed, "greenhouse.io", frozenset({"boards", "job-boards", "jobs"}))


def _workday(parsed: ParsedUrl) -> str | None:
    match = re.match(r"^([^.]+)\.wd\d+\.myworkdayjobs\.com$", parsed.host) or re.match(
        r"^([^.]+)\.workday\.com$", parsed.host
    )
    return title_case(match.group(1)) if match else None


def _career_subdomain(parsed: ParsedUrl) -> str | None:
    match = re.match(r"^(?:careers|jobs)\.([^.]+)\.", parsed.host)
    return title_case(match.group(1)) if match else None


def _registrable_domain(parsed: ParsedUrl) -> str | None:
    labels = parsed.host.split(".")
    label = labels[-2] if len(labels) >= 2 else labels[0]
    return KNOWN_COMPANIES.get(label) or title_case(label)


COMPANY_RULES: tuple[ExtractionRule, ...] = (
    ExtractionRule("linkedin", lambda p: "linkedin.com" in p.host, _linkedin, "LinkedIn Company"),
    ExtractionRule("indeed", lambda p: "indeed.com" in p.host, _indeed, "Indeed Company"),
    ExtractionRule(
        "glassdoor", lambda p: "glassdoor.com" in p.host, _glassdoor, "Glassdoor Company"
    ),
    ExtractionRule("lever", lambda p: _on_domain(p.host, "lever.co"), _lever, "Lever Company"),
    ExtractionRule(
        "greenhouse",
        lambda p: _on_domain(p.host, "greenhouse.io"),
        _greenhouse,
        "Greenhouse Company",
    ),
    ExtractionRule(
        "workday",
        lambda p: _on_domain(p.host, "myworkdayjobs.com") or _on_domain(p.host, "workday.com"),
        _workday,
        "Workday Company",
    ),
    ExtractionRule(
        "career_subdomain",
        lambda p: p.host.startswith(("careers.", "jobs.")),
        _career_subdomain,
    ),
    ExtractionRule("registrable_domain", lambda p: True, _registrable_domain, UNKNOWN_COMPANY),
)


def extract_company(url: str, rules: Iterable[ExtractionRule] = COMPANY_RULES) -> str:
    try:
        parsed = parse_url(url)
        if parsed is None:
            return UNKNOWN_COMPANY
        for rule in rules:
            if not rule.matches(parsed):
                continue
            company = rule.extract(parsed)
            if company:
                return company
            if rule.fallback is not None:
                return rule.fallback
    except ValueError:
        return UNKNOWN_COMPANY
    return UNKNOWN_COMPANY


def extract_title(url: str, company: str | None = None) -> str:
    del company  # titles are derived from the URL alone
    lowered = url.lower()
    for pattern, title in TITLE_PATTERNS:
        if pattern in lowered:
            return title
    return DEFAULT_TITLE


def passes_quality_gate(company: str | None) -> bool:
    return bool(company) and company not in REJECTED_COMPANIES


def analyze_job_url(raw_url: str, existing_urls: Iterable[str | None]) -> JobAnalysis:
    """
    Run the full analyze pipeline for a pasted URL.

    Validation happens first, then the duplicate check (so known URLs never
    reach the extraction chain), then extraction and the company quality
    gate.  Raises ``ClassificationError`` subclasses for user-facing failures;
    a duplicate is reported through ``JobAnalysis.duplicate``.
    """
    url = raw_url.strip()
    if not is_valid_url(url):
        raise InvalidJobUrlError()
    if is_duplicate(url, existing_urls):
        return JobAnalysis(url=url, duplicate=True)

    company = extract_company(url)
    if not passes_quality_gate(company):
        raise UnidentifiedCompanyError()
    return JobAnalysis(
        url=url,
        duplicate=False,
        extraction=ExtractionResult(company=company, title=extract_title(url, company)),
    )
