"""
Column-role classification for imported customer rows.

A file is classified once: either its columns carry meaningful labels
(``NamedColumnStrategy``) or they are bare positions and every row is read
with value-shape heuristics (``PositionalColumnStrategy``). Both produce the
same ``ImportedRow`` so the reconciler never looks at raw columns.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Mapping, Optional, Protocol

from dateutil import parser as date_parser

from app.services.phone_normalizer import is_phone_shaped
from app.timeutils import to_utc_naive


logger = logging.getLogger(__name__)

HEADER_KEYWORDS = (
    "phone",
    "mobile",
    "tel",
    "cell",
    "name",
    "email",
    "status",
    "subscri",
    "checkin",
    "signup",
    "notes",
    "date",
    "location",
    "rewards",
)

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%d/%m/%Y",
    "%Y/%m/%d",
    "%m-%d-%Y",
    "%d-%m-%Y",
    "%m/%d/%y",
    "%Y-%m-%d %H:%M:%S",
    "%m/%d/%Y %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
)
_DATE_SHAPE = re.compile(r"^\d{1,4}[/\-.]\d{1,2}[/\-.]\d{1,4}")
_YES_NO = re.compile(r"^(yes|no|y|n|true|false)$", re.IGNORECASE)

_SUBSCRIBED_YES = {"yes", "y", "true", "1"}
_SUBSCRIBED_NO = {"no", "n", "false", "0"}
_UNSUBSCRIBED_KEYWORDS = (
    "unsubscribed",
    "unsub",
    "inactive",
    "disabled",
    "opted-out",
    "opt-out",
    "cancelled",
    "stopped",
    "no",
)


@dataclass
class ImportedRow:
    phone: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    notes: Optional[str] = None
    subscription_state: Optional[str] = None
    last_checkin_at: Optional[datetime] = None
    signup_at: Optional[datetime] = None


class ColumnStrategy(Protocol):
    has_header: bool

    def extract(self, row: Mapping[str, str]) -> ImportedRow:
        ...


# ============================================================
# value helpers
# ============================================================
def _clean(value) -> str:
    if value is None:
        return ""
    return str(value).strip().strip("\"'").strip()


def normalize_label(label) -> str:
    return re.sub(r"[^a-z0-9]", "", str(label).lower())


def is_header_keyword(label) -> bool:
    norm = normalize_label(label)
    return any(keyword in norm for keyword in HEADER_KEYWORDS)


def is_email_shaped(value: str) -> bool:
    return "@" in value and "." in value


def is_date_shaped(value: str) -> bool:
    return bool(_DATE_SHAPE.match(value))


def parse_date(value) -> Optional[datetime]:
    text = _clean(value)
    if not text:
        return None

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue

    try:
        return to_utc_naive(date_parser.parse(text))
    except (ValueError, OverflowError):
        logger.warning("could not parse date", extra={"value": text})
        return None


def subscription_from_subscribed(value) -> Optional[str]:
    v = _clean(value).lower()
    if v in _SUBSCRIBED_YES:
        return "ACTIVE"
    if v in _SUBSCRIBED_NO:
        return "UNSUBSCRIBED"
    return None


def subscription_from_status(value) -> Optional[str]:
    v = _clean(value).lower()
    if not v:
        return None
    if any(keyword in v for keyword in _UNSUBSCRIBED_KEYWORDS):
        return "UNSUBSCRIBED"
    return "ACTIVE"


# ============================================================
# header detection
# ============================================================
def is_headerless(rows: list[Mapping[str, str]]) -> bool:
    """
    Column labels that are bare indices mean the file had no header line.
    A phone number sitting in the first cell while no label looks like a
    known header keyword means the same thing.
    """
    if not rows:
        return False
    labels = list(rows[0].keys())
    if not labels:
        return False
    if all(str(label).strip().isdigit() for label in labels):
        return True

    first_value = rows[0].get(labels[0])
    return is_phone_shaped(first_value) and not any(is_header_keyword(label) for label in labels)


# ============================================================
# strategies
# ============================================================
class NamedColumnStrategy:
    has_header = True

    def __init__(self, labels):
        self.columns: dict[str, str] = {}
        for label in labels:
            role = self._role_for(normalize_label(label))
            if role and role not in self.columns:
                self.columns[role] = label
        logger.info("import columns mapped by header", extra={"columns": self.columns})

    @staticmethod
    def _role_for(norm: str) -> Optional[str]:
        if "phone" in norm or "mobile" in norm or norm in {"tel", "telephone", "cell", "cellphone"}:
            return "phone"
        if "email" in norm:
            return "email"
        if "lastcheckin" in norm or "lastvisit" in norm:
            return "last_checkin"
        if "signup" in norm or norm in {"joined", "joinedat", "createdat"}:
            return "signup"
        if norm.startswith("subscribe"):
            return "subscribed"
        if "status" in norm:
            return "status"
        if "note" in norm:
            return "notes"
        if norm == "name" or norm in {"fullname", "customername", "customer", "firstname"}:
            return "name"
        return None

    def _get(self, row: Mapping[str, str], role: str) -> str:
        label = self.columns.get(role)
        if label is None:
            return ""
        return _clean(row.get(label))

    def extract(self, row: Mapping[str, str]) -> ImportedRow:
        subscription = None
        if "subscribed" in self.columns:
            subscription = subscription_from_subscribed(self._get(row, "subscribed"))
        if subscription is None and "status" in self.columns:
            subscription = subscription_from_status(self._get(row, "status"))

        return ImportedRow(
            phone=self._get(row, "phone") or None,
            name=self._get(row, "name") or None,
            email=self._get(row, "email") or None,
            notes=self._get(row, "notes") or None,
            subscription_state=subscription,
            last_checkin_at=parse_date(self._get(row, "last_checkin")),
            signup_at=parse_date(self._get(row, "signup")),
        )


class PositionalColumnStrategy:
    has_header = False

    # a name is only looked for among the first few columns
    NAME_COLUMNS = 3

    @staticmethod
    def _ordered_values(row: Mapping[str, str]) -> list[str]:
        def position(label):
            text = str(label).strip()
            return int(text) if text.isdigit() else 0

        return [_clean(row[label]) for label in sorted(row.keys(), key=position)]

    def extract(self, row: Mapping[str, str]) -> ImportedRow:
        values = self._ordered_values(row)
        fields = ImportedRow()
        dates: list[datetime] = []

        for idx, value in enumerate(values):
            if not value:
                continue
            if fields.phone is None and is_phone_shaped(value):
                fields.phone = value
                continue
            if is_email_shaped(value):
                if fields.email is None:
                    fields.email = value
                continue
            if is_date_shaped(value):
                parsed = parse_date(value)
                if parsed is not None:
                    dates.append(parsed)
                continue
            if _YES_NO.match(value):
                if fields.subscription_state is None:
                    fields.subscription_state = subscription_from_subscribed(value)
                continue
            if fields.name is None and idx < self.NAME_COLUMNS and not value.lstrip("+").isdigit():
                fields.name = value

        if fields.phone is None and values:
            # no phone-shaped value: the first column is the phone, and
            # validation reports what is wrong with it
            fields.phone = values[0] or None

        if dates:
            fields.last_checkin_at = dates[0]
        if len(dates) > 1:
            fields.signup_at = dates[1]
        return fields


def select_column_strategy(rows: list[Mapping[str, str]]) -> ColumnStrategy:
    if is_headerless(rows):
        return PositionalColumnStrategy()
    return NamedColumnStrategy(list(rows[0].keys()) if rows else [])


StrategySelector = Callable[[list[Mapping[str, str]]], ColumnStrategy]
