"""
Search query parser.

Turns a Gmail-style query string into SearchCriteria:

    from:alice@example.com from:bob@example.com subject:invoice has:attachment overdue

Repeated instances of one key are alternatives (OR); different keys must
all match (AND); text outside any key is a free-text filter ANDed with the
rest. Values may be quoted to include spaces: subject:"quarterly report".
"""
import re
from dataclasses import dataclass, field
from typing import List, Optional

VALUE = r'(?:"([^"]*)"|(\S+))'

KEY_PATTERNS = {
    'from': re.compile(rf'(?<!\S)from:{VALUE}', re.IGNORECASE),
    'to': re.compile(rf'(?<!\S)to:{VALUE}', re.IGNORECASE),
    'subject': re.compile(rf'(?<!\S)subject:{VALUE}', re.IGNORECASE),
    'contains': re.compile(rf'(?<!\S)contains:{VALUE}', re.IGNORECASE),
    'folder': re.compile(rf'(?<!\S)folder:{VALUE}', re.IGNORECASE),
    'has': re.compile(r'(?<!\S)has:(\w+)', re.IGNORECASE),
    'is': re.compile(r'(?<!\S)is:(\w+)', re.IGNORECASE),
}


@dataclass
class SearchCriteria:
    senders: List[str] = field(default_factory=list)
    recipients: List[str] = field(default_factory=list)
    subjects: List[str] = field(default_factory=list)
    contains: List[str] = field(default_factory=list)
    folders: List[str] = field(default_factory=list)
    has_attachment: Optional[bool] = None
    is_read: Optional[bool] = None
    is_starred: Optional[bool] = None
    free_text: Optional[str] = None

    def is_empty(self) -> bool:
        return not (
            self.senders or self.recipients or self.subjects or self.contains or self.folders
            or self.has_attachment is not None or self.is_read is not None
            or self.is_starred is not None or self.free_text
        )


def _values(pattern: re.Pattern, query: str) -> List[str]:
    values = []
    for match in pattern.finditer(query):
        value = match.group(1) if match.group(1) is not None else match.group(2)
        value = value.strip()
        if value:
            values.append(value)
    return values


def parse(query: Optional[str]) -> SearchCriteria:
    """Parse a query string into SearchCriteria. Unknown has:/is: values are ignored."""
    query = query or ""
    criteria = SearchCriteria(
        senders=_values(KEY_PATTERNS['from'], query),
        recipients=_values(KEY_PATTERNS['to'], query),
        subjects=_values(KEY_PATTERNS['subject'], query),
        contains=_values(KEY_PATTERNS['contains'], query),
        folders=_values(KEY_PATTERNS['folder'], query),
    )

    for value in KEY_PATTERNS['has'].findall(query):
        if value.lower() == 'attachment':
            criteria.has_attachment = True

    for value in KEY_PATTERNS['is'].findall(query):
        value = value.lower()
        if value == 'read':
            criteria.is_read = True
        elif value == 'unread':
            criteria.is_read = False
        elif value == 'starred':
            criteria.is_starred = True

    remainder = query
    for pattern in KEY_PATTERNS.values():
        remainder = pattern.sub(' ', remainder)
    remainder = ' '.join(remainder.split())
    if remainder:
        criteria.free_text = remainder

    return criteria


def _quote(value: str) -> str:
    return f'"{value}"' if any(c.isspace() for c in value) else value


def stringify(criteria: SearchCriteria) -> str:
    """Render criteria back into query syntax; parse(stringify(c)) == c."""
    parts = []
    parts += [f"from:{_quote(v)}" for v in criteria.senders]
    parts += [f"to:{_quote(v)}" for v in criteria.recipients]
    parts += [f"subject:{_quote(v)}" for v in criteria.subjects]
    parts += [f"contains:{_quote(v)}" for v in criteria.contains]
    if criteria.has_attachment:
        parts.append('has:attachment')
    if criteria.is_read is True:
        parts.append('is:read')
    elif criteria.is_read is False:
        parts.append('is:unread')
    if criteria.is_starred:
        parts.append('is:starred')
    parts += [f"folder:{_quote(v)}" for v in criteria.folders]
    if criteria.free_text:
        parts.append(criteria.free_text)
    return ' '.join(parts)
