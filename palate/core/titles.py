"""Calendar title cleaning, name normalization and fuzzy name matching.

Every function here is pure. ``TitleMatcher`` wraps them with an injected
cache for callers that compare the same strings many times.
"""
import re
import unicodedata
from typing import Optional

from palate.core.cache import TTLCache

Rule = tuple[re.Pattern, str]

_I = re.IGNORECASE

_DASHES = "–—−‐‑‒―-"
_DASH_RE = re.compile(f"[{_DASHES}]")
_SEP = r"\s*[-–—]\s*"


def _rules(patterns: list[str], flags: int = _I) -> list[Rule]:
    return [(re.compile(p, flags), "") for p in patterns]


_PLATFORMS = r"(?:resy|opentable|tock|yelp|seated|bookatable|quandoo|the\s+fork|exploretock|sevenrooms|tripleseat|tablein|eat\s*app)"

TITLE_PREFIX_RULES: list[Rule] = _rules([
    # reservation services
    r"^(reservation|resevervation)\s+(at|for|@)\s+",
    r"^booking\s+appointment\s+(at|for|@)\s+",
    r"^" + _PLATFORMS + r"\b\s*[-:@]?\s*(reservation\s+(at|for|@)?\s*)?",
    r"^via\s+(resy|opentable|tock|yelp)\b\s*[-:@]?\s*",
    # meals
    r"^(dinner|lunch|brunch|breakfast|supper|tea|coffee|happy\s*hour|drinks|appetizers)\s+(at|@)\s+",
    r"^(dinner|lunch|brunch|breakfast|supper)\s+reservation\s+(at|for|@)?\s*",
    # occasions
    r"^(date\s*night|anniversary|birthday|celebration|celebrate|party)\s+(at|@)\s+",
    r"^(date\s*night|anniversary|birthday|celebration)\s+dinner\s+(at\s+|@\s*)?",
    # "830pm at", "8:30 pm at"
    r"^\d{1,2}:?\d{0,2}\s*(am|pm)?\s+(at|@)\s+",
    r"^(eating\s+)?at\s+",
    r"^(going\s+to|meet\s+at|meeting\s+at|dining\s+at)\s+",
    r"^meal\s+(at|@)\s+",
    r"^table\s+(at|for|@)\s+",
    r"^booking\s+(at|for|@)\s+",
    r"^your\s+(reservation|table|booking)\s+(at|for|@)\s+",
    r"^ticket:\s+",
    r"^reservation\s*:\s+",
    r"^confirmation\s*:\s+",
    r"^confirmed\s*:\s+",
    r"^booking\s*:\s+",
    r"^reminder\s*:\s+",
    r"^don'?t\s+forget\s*:\s+",
    r"^event\s+(at|@)\s+",
    r"^upcoming\s+reservation\s+(at|for|@)\s+",
    r"^(dinner|cena)\s*\|\s*",
    # other languages
    r"^(pranzo|almuerzo|déjeuner|mittagessen|almoço)\s+((at|@|a|à|en|bei|em)\s+)?",
    r"^(cena|comida|dîner|abendessen|jantar)\s+((at|@|a|à|en|bei|em)\s+)?",
    r"^(colazione|desayuno|petit\s*déjeuner|frühstück|café\s*da\s*manhã)\s+((at|@|a|à|en|bei|em)\s+)?",
    # food emoji
    r"^[🍴🍕🍔🍣🍜🥘🍝🍲🥗🍛🍱🥡🍷🍺🍸🥂🍾☕🍵🍽]\ufe0f?\s*",
])

_MONTH = r"(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)\w*"
_PARTY = r"(people|guests|pax|persons?)"

TITLE_SUFFIX_RULES: list[Rule] = _rules([
    # party size
    r"(" + _SEP + r"|\s+)\d+\s*" + _PARTY + r"$",
    _SEP + r"table\s+for\s+\d+$",
    _SEP + r"party\s+of\s+\d+$",
    r"\s*\(\d+\s*" + _PARTY + r"\)$",
    r"\s*\(party\s+of\s+\d+\)$",
    r"\s*\(table\s+for\s+\d+\)$",
    r"\s*\(for\s+\d+\)$",
    r"\s+for\s+\d+$",
    r"\s+(dinner|lunch|brunch|cena|breakfast|supper)$",
    # status
    _SEP + r"(confirmed|pending|waitlist|wait\s*list)$",
    r"\s*\((confirmed|pending|waitlist|wait\s*list)\)$",
    # time
    _SEP + r"\d{1,2}:\d{2}\s*(am|pm)?$",
    r"\s*@\s*\d{1,2}:\d{2}\s*(am|pm)?$",
    r"\s+on\s+\w+\s*,\s*\w+\s+\d{1,2}(st|nd|rd|th)?\s*,\s*\d{4}\s*,?\s*\d{1,2}:\d{2}\s*(am|pm)?$",
    # dates
    _SEP + r"\d{1,2}/\d{1,2}(/\d{2,4})?$",
    _SEP + _MONTH + r"\s+\d{1,2}(st|nd|rd|th)?$",
    r"\s*\(" + _MONTH + r"\s+\d{1,2}(st|nd|rd|th)?\)$",
    # confirmation numbers
    _SEP + r"(conf|confirmation)\s*#?\s*\w+$",
    r"\s*\(confirmation\s*:?\s*\w+\)$",
    r"\s*\(reservation\s*:?\s*\w+\)$",
    r"\s*\(booking\s*:?\s*\w+\)$",
    r"\s*#\s*\w{4,}$",
    # companions
    _SEP + r"w/?\s+\w+.*$",
    _SEP + r"with\s+\w+.*$",
    r"\s*\(w/?\s+\w+.*\)$",
    r"\s*\(with\s+\w+.*\)$",
    # booked via
    _SEP + r"via\s+(resy|opentable|tock|yelp|thefork)$",
    r"\s*\(via\s+(resy|opentable|tock|yelp|thefork)\)$",
    r"\s*\((resy|opentable|tock|yelp|thefork)\)$",
    # branch
    _SEP + r"(downtown|midtown|uptown|westside|eastside)$",
    _SEP + r"(main|flagship|original)(\s*(location|branch))?$",
    r"\s+reservation$",
    r"\s+booking$",
])

COMPARISON_PREFIX_RULES: list[Rule] = _rules([
    r"^reservation\s+(at|for|@)\s+",
    r"^upcoming\s+reservation\s+(at|for|@)\s+",
    r"^reservation\s*:\s+",
    r"^the\s+(dining\s+room|dining\s+hall|experience|kitchen\s+table|table)\s*(at\b)?\s*:?\s*",
    r"^the\s+",
    r"^restaurant\b\s*:?\s*",
    r"^bar\b\s*:?\s*",
    r"^confirmation\b\s*:?\s+",
    r"^booking\b\s*:?\s+",
    r"^confirmed\b\s*:?\s+",
    r"^dinner\s*(at|@)?\s+",
    r"^lunch\s*(at|@)?\s+",
    r"^brunch\s*(at|@)\s+",
    r"^breakfast\s*(at|@)?\s+",
    r"^supper\s+(at|@)\s+",
    r"^meal\s+(at|@)\s+",
    r"^table\s*(at|for|@)?\s+",
    r"^eating\s+(at|@)\s+",
    r"^dining\s+(at|@)\s+",
    r"^visit\s+to\s+",
    r"^going\s+to\s+",
    r"^meet(ing)?\s+(at|@)\s+",
    r"^date\s+(night\s+)?(at|@)\s+",
    r"^(anniversary|birthday|celebration)\s+(at|@)\s+",
    r"^(resy|opentable|tock|yelp)\b\s*[-:@]?\s*",
    r"^via\s+(resy|opentable|tock|yelp)\b\s*[-:@]?\s*",
])

_VENUE_WORDS = [
    r"bar\s+(and|&)\s+restaurant", "restaurant", r"steak\s?house", "gourmet",
    "cafe", "café", "bar", "bistro", "kitchen", "grill", "company", "brewing",
    "house", "japanese", "farm", "inn", "room", "place", "experience",
    "eatery", "dining", "tavern", "pub", "pizzeria", "trattoria", "osteria",
    "ristorante", "brasserie", "chophouse", "seafood", "sushi", "ramen",
    "izakaya", "taqueria", "cantina", "bodega", "diner", "lounge",
    r"wine\s*bar", r"cocktail\s*bar", "gastropub", "bakery", "patisserie",
    "delicatessen", "deli", "creamery", "rooftop", "terrace", "garden",
    "spot", "joint", "shack", "club",
    # city abbreviations
    r"(nyc|la|sf|london|dc|atl|chi|bos|sea|pdx|phx|den|mia|dal|hou|austin)",
]

COMPARISON_SUFFIX_RULES: list[Rule] = _rules(
    [r"\s+" + w + r"\s*$" for w in _VENUE_WORDS]
)

INSIGNIFICANT_WORDS = frozenset({
    "the", "restaurant", "cafe", "café", "bar", "bistro", "kitchen", "grill",
    "house", "room", "place", "a", "an", "and", "&", "eatery", "dining",
    "tavern", "pub", "inn", "lounge", "spot", "joint", "diner", "at", "of",
    "in", "on", "for",
})

FUZZY_MIN_LENGTH = 3
MAX_SIGNIFICANT_WORDS = 2

_MAX_ROUNDS = 32


def apply_rules(text: str, *rule_lists: list[Rule]) -> str:
    """Apply rule lists in order, repeating until the text stops changing."""
    for _ in range(_MAX_ROUNDS):
        prev = text
        for rules in rule_lists:
            for pattern, repl in rules:
                text = pattern.sub(repl, text, count=1)
        text = text.strip()
        if text == prev:
            break
    return text


def _collapse_ws(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def clean_calendar_title(title: Optional[str]) -> str:
    """Extract the likely restaurant name from a calendar event title."""
    if not title:
        return ""
    cleaned = apply_rules(
        _collapse_ws(title), TITLE_PREFIX_RULES, TITLE_SUFFIX_RULES
    )
    return _collapse_ws(_DASH_RE.sub(" ", cleaned))


def strip_comparison_affixes(name: str) -> str:
    """Remove venue-type words and booking prefixes that vary between sources."""
    if not name:
        return ""
    text = _collapse_ws(_DASH_RE.sub(" ", name))
    return apply_rules(text, COMPARISON_PREFIX_RULES, COMPARISON_SUFFIX_RULES)


_EMOJI_RE = re.compile(
    "["
    "\U0001F000-\U0001FAFF"
    "\u2600-\u27BF"
    "\u2B00-\u2BFF"
    "\u2300-\u23FF"
    "\uFE0E\uFE0F\u200D\u20E3"
    "\U000E0020-\U000E007F"
    "]"
)
_QUOTES_RE = re.compile("[\u2018\u2019`\u00B4\u02BC\u02BB]")
_NORM_DASH_RE = re.compile("[\u2013\u2014\u2212\u2010\u2011\u2012\u2015]")
_AMP_RE = re.compile(r"\s*&\s*")
_POSSESSIVE_RE = re.compile(r"'s\b")
_NON_WORD_RE = re.compile(r"[^\w\s]|_")

# Letters that NFKD does not decompose.
_DEBURR = str.maketrans({
    "ø": "o", "Ø": "O", "æ": "ae", "Æ": "AE", "œ": "oe", "Œ": "OE",
    "ß": "ss", "ł": "l", "Ł": "L", "đ": "d", "Đ": "D", "ð": "d",
    "þ": "th", "ı": "i",
})


def deburr(text: str) -> str:
    text = unicodedata.normalize("NFKD", text.translate(_DEBURR))
    return "".join(c for c in text if unicodedata.category(c) != "Mn")


def normalize_for_comparison(text: Optional[str]) -> str:
    if not text:
        return ""
    text = deburr(deburr(text).casefold())
    text = _EMOJI_RE.sub("", text)
    text = _QUOTES_RE.sub("'", text)
    text = _NORM_DASH_RE.sub(" ", text)
    text = _AMP_RE.sub(" and ", text)
    text = _POSSESSIVE_RE.sub("s", text)
    text = text.replace("'", "")
    text = _NON_WORD_RE.sub(" ", text)
    return _collapse_ws(text)


def significant_words(normalized: str) -> list[str]:
    return [
        w for w in normalized.split(" ")
        if len(w) > 1 and w not in INSIGNIFICANT_WORDS
    ]


def _words_contained(words: list[str], other: str) -> bool:
    return 0 < len(words) <= MAX_SIGNIFICANT_WORDS and all(w in other for w in words)


def is_fuzzy_restaurant_match(a: str, b: str, threshold: int = FUZZY_MIN_LENGTH) -> bool:
    norm_a = normalize_for_comparison(a)
    norm_b = normalize_for_comparison(b)
    if len(norm_a) < threshold or len(norm_b) < threshold:
        return False
    if norm_a == norm_b or norm_a in norm_b or norm_b in norm_a:
        return True
    return (
        _words_contained(significant_words(norm_a), norm_b)
        or _words_contained(significant_words(norm_b), norm_a)
    )


def comparison_key(name: str) -> str:
    """Key used by the exact-name index."""
    return normalize_for_comparison(strip_comparison_affixes(name))


def titles_match_exactly(calendar_title: str, restaurant_name: str) -> bool:
    if not calendar_title or not restaurant_name:
        return False
    cal = comparison_key(clean_calendar_title(calendar_title))
    name = comparison_key(restaurant_name)
    if len(cal) < FUZZY_MIN_LENGTH or len(name) < FUZZY_MIN_LENGTH:
        return False
    return cal == name


class TitleMatcher:
    """Memoizing front for the title functions.

    The cache is owned by whoever constructs the matcher, so separate
    pipeline runs or tests never share state.
    """

    def __init__(self, cache: Optional[TTLCache] = None):
        self.cache = cache if cache is not None else TTLCache()

    def clean(self, title: str) -> str:
        return self.cache.get_or_compute(("clean", title), lambda: clean_calendar_title(title))

    def normalize(self, text: str) -> str:
        return self.cache.get_or_compute(("norm", text), lambda: normalize_for_comparison(text))

    def comparison_key(self, name: str) -> str:
        return self.cache.get_or_compute(("key", name), lambda: comparison_key(name))

    def fuzzy_match(self, a: str, b: str) -> bool:
        key = ("fuzzy",) + tuple(sorted((a, b)))
        return self.cache.get_or_compute(key, lambda: is_fuzzy_restaurant_match(a, b))
