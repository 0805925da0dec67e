"""Turns one fetched page into audit findings.

Nothing here touches the network or the database: the caller hands in the
fetch result plus the titles seen so far in the crawl and gets back the
findings for that page.
"""

from dataclasses import asdict, dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

PERMANENT_REDIRECTS = frozenset({301, 308})

MISSING_TITLE = "missing_title"
MISSING_DESCRIPTION = "missing_description"
DUPLICATE_TITLE = "duplicate_title"


@dataclass(frozen=True)
class Error404:
    url: str
    source_page: Optional[str]
    link_text: str = ""

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class Redirect301:
    from_url: str
    to_url: str
    source_page: Optional[str]

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class SeoIssue:
    url: str
    issue_type: str
    description: str

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class Findings:
    errors_404: List[Error404] = field(default_factory=list)
    redirects_301: List[Redirect301] = field(default_factory=list)
    seo_issues: List[SeoIssue] = field(default_factory=list)

    def __bool__(self):
        return bool(self.errors_404 or self.redirects_301 or self.seo_issues)


def _blank(value: Optional[str]) -> bool:
    return not value or not value.strip()


def duplicate_title_issues(url: str, title: str, seen_titles: Mapping[str, Sequence[str]]) -> List[SeoIssue]:
    """Duplicate-title findings for ``url`` given the titles already seen.

    The first page that used the title is reported only when the title
    repeats for the first time; later repeats report just the new page.
    """
    earlier = [other for other in seen_titles.get(title, ()) if other != url]
    if not earlier:
        return []

    original = earlier[0]
    issues = []
    if len(earlier) == 1:
        issues.append(SeoIssue(
            url=original,
            issue_type=DUPLICATE_TITLE,
            description=f'Title "{title}" is also used by {url}',
        ))
    issues.append(SeoIssue(
        url=url,
        issue_type=DUPLICATE_TITLE,
        description=f'Title "{title}" is also used by {original}',
    ))
    return issues


def classify_page(result, source_page: Optional[str], link_text: str,
                  seen_titles: Mapping[str, Sequence[str]]) -> Findings:
    """Classify a fetch result into 404, permanent redirect and SEO findings.

    ``seen_titles`` maps each title recorded earlier in the crawl to the URLs
    that carried it, in discovery order. It is only read here.
    """
    findings = Findings()
    status = result.status_code

    if status == 404:
        findings.errors_404.append(Error404(url=result.url, source_page=source_page, link_text=link_text or ""))
    elif status in PERMANENT_REDIRECTS and result.redirect_target:
        findings.redirects_301.append(Redirect301(
            from_url=result.url, to_url=result.redirect_target, source_page=source_page,
        ))
    elif status == 200 and result.is_html:
        if _blank(result.title):
            findings.seo_issues.append(SeoIssue(
                url=result.url, issue_type=MISSING_TITLE, description="Page has no <title> or it is empty",
            ))
        else:
            findings.seo_issues.extend(duplicate_title_issues(result.url, result.title, seen_titles))
        if _blank(result.description):
            findings.seo_issues.append(SeoIssue(
                url=result.url, issue_type=MISSING_DESCRIPTION, description="Page has no meta description",
            ))

    return findings
