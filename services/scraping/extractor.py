"""Contact extraction rules shared by the static fetcher and the browser fallback.

Given raw or rendered HTML, pulls email and phone candidates out of
mailto/tel links, element attributes and visible text, then cleans,
filters and ranks them.
"""

import re
from typing import List, Optional
from urllib.parse import unquote

from bs4 import BeautifulSoup
from pydantic import BaseModel


class ContactInfo(BaseModel):
    """Best email and phone found on one page."""
    email: Optional[str] = None
    phone: Optional[str] = None


def decode_cloudflare_email(encoded: str) -> str:
    """Decode a Cloudflare email-protection hex string ("" if malformed)."""
    try:
        key = int(encoded[:2], 16)
        return "".join(
            chr(int(encoded[i:i + 2], 16) ^ key) for i in range(2, len(encoded), 2)
        )
    except ValueError:
        return ""


def _unique(values: List[str]) -> List[str]:
    seen = set()
    out = []
    for v in values:
        if v not in seen:
            seen.add(v)
            out.append(v)
    return out


class ContactExtractor:
    """Extracts the best email and phone from a page."""

    # No match may start in the middle of a local part or end glued to
    # a trailing letter/digit.
    EMAIL_PATTERN = re.compile(
        r"(?<![A-Za-z0-9._%+-])[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}(?![A-Za-z0-9])"
    )
    # '%' is excluded so cleaning a cleaned value is a no-op.
    CLEAN_PATTERN = re.compile(r"[A-Za-z0-9._+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
    SHAPE_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
    ASSET_PATTERN = re.compile(r"\.(png|jpg|jpeg|gif|svg|webp|ico|css|js|woff|ttf|eot)$")
    HEX_HASH_PATTERN = re.compile(r"^[a-f0-9]{20,}$", re.IGNORECASE)
    RETINA_ASSET_PATTERN = re.compile(r"\d+x\.(png|jpg)", re.IGNORECASE)

    PHONE_PATTERN = re.compile(r"(\+?\d{1,3}[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}")

    GENERIC_PATTERNS = [
        "noreply", "no-reply", "donotreply", "do-not-reply",
        "example.com", "test.com",
        "support@example", "info@example", "contact@example",
        "user@domain.com", "admin@domain.com", "email@domain.com",
        "name@domain.com", "your@domain.com",
        "youremail@", "yourname@", "user@", "username@",
    ]

    PRIORITY_PREFIXES = [
        "info@", "contact@", "hello@", "admin@",
        "support@", "sales@", "office@", "frontdesk@",
    ]

    # ------------------------------------------------------------------
    # Emails
    # ------------------------------------------------------------------

    @classmethod
    def clean_email(cls, raw: str) -> str:
        """Trim a raw candidate down to its longest local@domain.tld substring.

        URL-decodes, drops whitespace and leading dots. Returns "" when
        nothing email-shaped remains.
        """
        value = re.sub(r"\s+", "", unquote(raw or ""))
        candidates = [m.lstrip(".") for m in cls.CLEAN_PATTERN.findall(value)]
        candidates = [c for c in candidates if not c.startswith("@")]
        if not candidates:
            return ""
        return max(candidates, key=len)

    @classmethod
    def is_valid_email(cls, email: str) -> bool:
        if not email or not cls.SHAPE_PATTERN.match(email):
            return False
        if "@example." in email or "@test." in email:
            return False

        lower = email.lower()
        if cls.ASSET_PATTERN.search(lower):
            return False
        if "img-" in lower or "image-" in lower or "slide-" in lower:
            return False

        parts = email.split("@")
        if len(parts) != 2:
            return False
        local, domain = parts
        if not local or cls.HEX_HASH_PATTERN.match(local):
            return False
        if cls.RETINA_ASSET_PATTERN.search(local):
            return False

        labels = domain.split(".")
        if len(labels) < 2:
            return False
        tld = labels[-1]
        return len(tld) >= 2 and not any(ch.isdigit() for ch in tld)

    @classmethod
    def is_generic_email(cls, email: str) -> bool:
        lower = email.lower()
        return any(pattern in lower for pattern in cls.GENERIC_PATTERNS)

    @classmethod
    def select_best_email(cls, emails: List[str]) -> Optional[str]:
        """First match by priority prefix, else the first candidate. Lowercased."""
        if not emails:
            return None
        for prefix in cls.PRIORITY_PREFIXES:
            for email in emails:
                if email.lower().startswith(prefix):
                    return email.lower()
        return emails[0].lower()

    @classmethod
    def filter_emails(cls, raw_emails: List[str]) -> List[str]:
        """Clean, validate and drop generic addresses, keeping first-seen order."""
        cleaned = [cls.clean_email(e) for e in _unique(raw_emails)]
        return _unique([
            e for e in cleaned
            if cls.is_valid_email(e) and not cls.is_generic_email(e)
        ])

    # ------------------------------------------------------------------
    # Phones
    # ------------------------------------------------------------------

    @staticmethod
    def is_valid_phone(phone: str) -> bool:
        """US numbers only: 10 digits, or 11 with a leading 1. Area code starts 2-9."""
        digits = re.sub(r"\D", "", phone or "")
        if len(digits) == 10:
            return "2" <= digits[0] <= "9"
        if len(digits) == 11 and digits[0] == "1":
            return "2" <= digits[1] <= "9"
        return False

    @staticmethod
    def normalize_phone(phone: str) -> str:
        """Format as (XXX) XXX-XXXX. Assumes is_valid_phone."""
        digits = re.sub(r"\D", "", phone)
        if len(digits) == 11:
            digits = digits[1:]
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"

    @classmethod
    def best_phone(cls, tel_phones: List[str], text_phones: List[str]) -> Optional[str]:
        """tel: links win; text matches are only used when no tel: link validates."""
        for source in (tel_phones, text_phones):
            valid = [cls.normalize_phone(p) for p in _unique(source) if cls.is_valid_phone(p)]
            if valid:
                return valid[0]
        return None

    # ------------------------------------------------------------------
    # Page
    # ------------------------------------------------------------------

    @classmethod
    def extract(cls, html: str) -> ContactInfo:
        """Extract the best email and phone from an HTML document."""
        soup = BeautifulSoup(html or "", "html.parser")
        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()

        raw_emails: List[str] = []
        tel_phones: List[str] = []

        for link in soup.find_all("a", href=True):
            href = link["href"].strip()
            lower = href.lower()
            if lower.startswith("mailto:"):
                raw_emails.append(href[len("mailto:"):].split("?")[0])
            elif lower.startswith("tel:"):
                tel_phones.append(href[len("tel:"):].strip())
            elif "/cdn-cgi/l/email-protection#" in lower:
                raw_emails.append(decode_cloudflare_email(href.split("#", 1)[1]))

        for tag in soup.find_all(attrs={"data-cfemail": True}):
            raw_emails.append(decode_cloudflare_email(tag["data-cfemail"]))

        body = soup.body or soup
        text = body.get_text(" ")
        raw_emails.extend(cls.EMAIL_PATTERN.findall(text))

        for tag in soup.find_all(True):
            for value in tag.attrs.values():
                if isinstance(value, list):
                    value = " ".join(value)
                if isinstance(value, str) and "@" in value:
                    raw_emails.extend(cls.EMAIL_PATTERN.findall(value))

        text_phones = [m.group(0) for m in cls.PHONE_PATTERN.finditer(text)]

        return ContactInfo(
            email=cls.select_best_email(cls.filter_emails(raw_emails)),
            phone=cls.best_phone(tel_phones, text_phones),
        )


# ----------------------------------------------------------------------
# Domain helpers
# ----------------------------------------------------------------------

def strip_domain(domain: str) -> str:
    """Drop scheme and trailing slash from a stored domain."""
    value = (domain or "").strip()
    value = re.sub(r"^https?://", "", value, flags=re.IGNORECASE)
    return value.rstrip("/")


def build_url(domain: str, path: str = "") -> str:
    return f"https://{strip_domain(domain)}{path}"


def is_directory_site(domain: str, directory_domains: List[str]) -> bool:
    """True when the host is a listing/social site or one of its subdomains."""
    host = strip_domain(domain).lower().split("/")[0]
    if host.startswith("www."):
        host = host[4:]
    return any(host == d or host.endswith("." + d) for d in directory_domains)
