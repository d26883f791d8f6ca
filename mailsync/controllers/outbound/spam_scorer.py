"""
Deliverability scoring for outgoing drafts.

Scoring is a pure function of the draft content: no I/O and no state, so it is
safe to call on every edit. Each rule that fires adds to the score and records
an issue. The score is capped at 10.
"""

import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

from bs4 import BeautifulSoup
from email_validator import EmailNotValidError, validate_email

from settings import settings

SUBJECT_TRIGGER_WORDS = (
    "free",
    "winner",
    "cash",
    "prize",
    "urgent",
    "!!!",
    "click here",
    "act now",
    "limited time",
    "guarantee",
    "no obligation",
    "risk-free",
    "miracle",
    "amazing",
)
BODY_TRIGGER_PHRASES = (
    "click here now",
    "buy now",
    "order now",
    "subscribe now",
    "get it now",
    "apply now",
    "limited time offer",
    "act immediately",
    "once in lifetime",
    "what are you waiting for",
    "money back guarantee",
)
SUSPICIOUS_TLDS = (".tk", ".ml", ".ga", ".cf")
URL_SHORTENERS = ("bit.ly", "tinyurl.com")
FREE_MAIL_DOMAINS = ("gmail.com", "yahoo.com", "hotmail.com", "outlook.com")
DOMAIN_TYPOS = {
    "gmial.com": "gmail.com",
    "gmai.com": "gmail.com",
    "yahooo.com": "yahoo.com",
    "outlok.com": "outlook.com",
    "hotmial.com": "hotmail.com",
}
DISPOSABLE_DOMAINS = ("tempmail.com", "throwaway.email", "10minutemail.com", "guerrillamail.com", "mailinator.com")
UNSAFE_TAGS = ("script", "form", "iframe", "object", "embed")
URL_RE = re.compile(r"https?://[^\s<>\"']+", re.IGNORECASE)

MAX_SCORE = 10.0
MAX_LINKS = 10
SHORT_CONTENT_LENGTH = 100
MIN_CONTENT_LENGTH = 50
MAX_CAPS_WORDS = 5


@dataclass
class SpamScoreResult:
    score: float
    issues: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    @property
    def band(self) -> str:
        if self.score < 3:
            return "excellent"
        if self.score < 5:
            return "good"
        return "risky"

    @property
    def is_safe(self) -> bool:
        return self.score < settings.outbound.spam_warn_score

    @property
    def requires_confirmation(self) -> bool:
        return self.score >= settings.outbound.spam_confirm_score

    @property
    def is_blocked(self) -> bool:
        return self.score >= settings.outbound.spam_hard_block_score

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "band": self.band,
            "issues": list(self.issues),
            "recommendations": list(self.recommendations),
            "is_safe": self.is_safe,
            "requires_confirmation": self.requires_confirmation,
            "is_blocked": self.is_blocked,
        }


@dataclass
class RecipientCheck:
    email: str
    is_valid: bool
    reason: str | None = None
    suggestions: list[str] = field(default_factory=list)


class _Score:
    def __init__(self) -> None:
        self.value = 0.0
        self.issues: list[str] = []
        self.recommendations: list[str] = []

    def add(self, points: float, issue: str, recommendation: str | None = None) -> None:
        self.value += points
        self.issues.append(issue)
        if recommendation and recommendation not in self.recommendations:
            self.recommendations.append(recommendation)


def _is_suspicious_url(url: str) -> bool:
    host = (urlsplit(url).hostname or "").lower()
    return host.endswith(SUSPICIOUS_TLDS) or host in URL_SHORTENERS


def _is_caps_word(word: str) -> bool:
    return len(word) > 3 and any(c.isalpha() for c in word) and word == word.upper()


class SpamScorer:
    def score(
        self, from_email: str, subject: str | None, html_body: str | None, text_body: str | None
    ) -> SpamScoreResult:
        subject = subject or ""
        html_body = html_body or ""
        text_body = text_body or ""
        result = _Score()

        self._score_subject(subject, result)

        soup = BeautifulSoup(html_body, "html.parser")
        html_text = soup.get_text(" ", strip=True)
        combined = f"{text_body} {html_text}"
        combined_lower = combined.lower()
        content_length = len(text_body) or len(html_text)

        for phrase in BODY_TRIGGER_PHRASES:
            if phrase in combined_lower:
                result.add(0.5, f'Spam phrase found: "{phrase}"', "Reduce use of high-pressure sales language")

        links = soup.find_all("a", href=True)
        if len(links) > MAX_LINKS:
            result.add(1, "Too many links in email", f"Reduce number of links (keep under {MAX_LINKS})")
        if html_body and content_length < SHORT_CONTENT_LENGTH and len(links) > 2:
            result.add(2, "Too many links for short content", "Add more text content or reduce links")

        if soup.find("img") is not None and content_length < MIN_CONTENT_LENGTH:
            result.add(2, "Email is mostly images with little text", "Include more text content alongside images")

        for url in URL_RE.findall(html_body):
            if _is_suspicious_url(url):
                result.add(1, f"Suspicious or shortened URL: {url}", "Use full URLs instead of URL shorteners")

        if html_body and not text_body:
            result.add(1, "No plain text version provided", "Always include a plain text version of your email")

        domain = from_email.rsplit("@", 1)[-1].lower() if "@" in from_email else ""
        if domain in FREE_MAIL_DOMAINS:
            result.add(
                0.5,
                "Sending from free email provider",
                "Consider using a custom domain for better deliverability",
            )

        if soup.find("form") is not None:
            result.add(2, "HTML forms in email", "Remove HTML forms (use links instead)")
        if soup.find("script") is not None:
            result.add(3, "JavaScript in email", "Remove all JavaScript (not supported in most email clients)")

        if sum(1 for word in combined.split() if _is_caps_word(word)) > MAX_CAPS_WORDS:
            result.add(1, "Too many words in all caps", "Use normal capitalization in email body")

        if content_length < MIN_CONTENT_LENGTH:
            result.add(1, "Email content is too short", f"Include at least {MIN_CONTENT_LENGTH} characters of content")

        return SpamScoreResult(
            score=min(round(result.value, 2), MAX_SCORE),
            issues=result.issues,
            recommendations=result.recommendations,
        )

    def _score_subject(self, subject: str, result: _Score) -> None:
        if not subject.strip():
            result.add(3, "No subject line", "Add a clear, descriptive subject line")
            return

        subject_lower = subject.lower()
        found = [word for word in SUBJECT_TRIGGER_WORDS if word in subject_lower]
        if found:
            result.add(
                0.5 * len(found),
                f"Spam trigger words in subject: {', '.join(found)}",
                'Avoid using spam trigger words like "free", "winner", "urgent", etc.',
            )

        if len(subject) > 3 and subject == subject.upper() and any(c.isalpha() for c in subject):
            result.add(2, "Subject is all caps", "Use normal capitalization in subject line")

        exclamations = subject.count("!")
        if exclamations > 1:
            result.add(exclamations, "Excessive exclamation marks in subject", "Use at most one exclamation mark")


def sanitize_html(html: str) -> str:
    """Drop active content: script/form/iframe/object/embed, on* handlers and javascript: links."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(list(UNSAFE_TAGS)):
        if not tag.decomposed:
            tag.decompose()
    for tag in soup.find_all(True):
        for attribute in [name for name in tag.attrs if name.lower().startswith("on")]:
            del tag.attrs[attribute]
        href = tag.get("href")
        if isinstance(href, str) and href.strip().lower().startswith("javascript:"):
            del tag.attrs["href"]
    return str(soup)


def validate_recipient(email: str) -> RecipientCheck:
    try:
        validated = validate_email(email, check_deliverability=False)
    except EmailNotValidError as e:
        return RecipientCheck(
            email=email,
            is_valid=False,
            reason=str(e),
            suggestions=["Check for typos", "Ensure proper format (user@domain.com)"],
        )

    domain = validated.domain.lower()
    if domain in DOMAIN_TYPOS:
        return RecipientCheck(
            email=validated.normalized,
            is_valid=True,
            reason="Possible typo in domain",
            suggestions=[f"Did you mean {DOMAIN_TYPOS[domain]}?"],
        )
    if domain in DISPOSABLE_DOMAINS:
        return RecipientCheck(
            email=validated.normalized,
            is_valid=True,
            reason="Disposable email address detected",
            suggestions=["Consider asking for a permanent email address"],
        )
    return RecipientCheck(email=validated.normalized, is_valid=True)
