"""
Regulation text statistics. Pure Python, no I/O.
Used by the text_metrics worker (word/keyword/readability figures) and the
age_distribution worker (amendment-age buckets).
"""
import re
from datetime import date, datetime

TAG_RE = re.compile(r"<[^>]+>")
ENTITY_RE = re.compile(r"&[a-zA-Z]+;|&#\d+;")
WHITESPACE_RE = re.compile(r"\s+")
WORD_RE = re.compile(r"\b[a-zA-Z0-9]+(?:[-'][a-zA-Z0-9]+)*\b")
SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
VOWEL_GROUP_RE = re.compile(r"[aeiouy]+")

AGE_BUCKETS = ("lessThan1Year", "oneToFiveYears", "fiveToTenYears", "tenToTwentyYears", "moreThanTwentyYears")
DAYS_PER_YEAR = 365


def clean_text(text: str | None) -> str:
    if not text:
        return ""
    text = TAG_RE.sub(" ", text)
    text = ENTITY_RE.sub(" ", text)
    return WHITESPACE_RE.sub(" ", text).strip()


def words(text: str) -> list[str]:
    return WORD_RE.findall(text)


def sentences(text: str) -> list[str]:
    return [s.strip() for s in SENTENCE_SPLIT_RE.split(text) if s.strip()]


def count_syllables(word: str) -> int:
    """Vowel-group heuristic: silent trailing 'e' dropped, every word has at least one syllable."""
    w = word.lower()
    w = re.sub(r"[^a-z]", "", w)
    if not w:
        return 1
    if len(w) > 2 and w.endswith("e") and not w.endswith(("le", "ee", "ye")):
        w = w[:-1]
    return max(1, len(VOWEL_GROUP_RE.findall(w)))


def camel_key(keyword: str) -> str:
    """'reporting requirement' -> 'reportingRequirement'"""
    head, *rest = keyword.strip().lower().split()
    return head + "".join(part.capitalize() for part in rest)


def keyword_frequency(text: str, keywords: list[str]) -> dict[str, int]:
    freq = {}
    for kw in keywords:
        if not kw.strip():
            continue
        pattern = re.compile(r"\b" + re.escape(kw.strip()) + r"\b", re.IGNORECASE)
        freq[camel_key(kw)] = len(pattern.findall(text))
    return freq


def readability_score(word_list: list[str], sentence_list: list[str]) -> float:
    """Flesch reading ease, clamped to [0, 100]. Empty text reads as 100."""
    if not word_list or not sentence_list:
        return 100.0
    syllables = sum(count_syllables(w) for w in word_list)
    words_per_sentence = len(word_list) / len(sentence_list)
    syllables_per_word = syllables / len(word_list)
    score = 206.835 - 1.015 * words_per_sentence - 84.6 * syllables_per_word
    return round(min(100.0, max(0.0, score)), 1)


def complexity_score(word_list: list[str], sentence_list: list[str]) -> int:
    if not word_list or not sentence_list:
        return 0
    lengths = [len(words(s)) for s in sentence_list]
    avg_len = sum(lengths) / len(lengths)
    variance = sum((n - avg_len) ** 2 for n in lengths) / len(lengths)
    complex_ratio = sum(1 for w in word_list if count_syllables(w) >= 3) / len(word_list)
    score = min(avg_len / 30, 1) * 40 + complex_ratio * 40 + min(variance / 100, 1) * 20
    return round(score)


def analyze_text(raw: str | None, keywords: list[str]) -> dict:
    text = clean_text(raw)
    word_list = words(text)
    sentence_list = sentences(text)
    avg_sentence = round(len(word_list) / len(sentence_list)) if sentence_list else 0
    return {
        "word_count"              : len(word_list),
        "keyword_frequency"       : keyword_frequency(text, keywords),
        "complexity_score"        : complexity_score(word_list, sentence_list),
        "average_sentence_length" : avg_sentence,
        "readability_score"       : readability_score(word_list, sentence_list),
    }


# ── Regulation age ───────────────────────────────────────────────────────────

def _to_date(value) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None


def bucket_ages(amendment_dates, today: date | None = None) -> dict[str, int]:
    """Count amendment dates per age bucket. Unparseable dates are ignored."""
    today = today or date.today()
    buckets = dict.fromkeys(AGE_BUCKETS, 0)
    for raw in amendment_dates:
        d = _to_date(raw)
        if d is None:
            continue
        years = (today - d).days / DAYS_PER_YEAR
        if years < 1:
            buckets["lessThan1Year"] += 1
        elif years < 5:
            buckets["oneToFiveYears"] += 1
        elif years < 10:
            buckets["fiveToTenYears"] += 1
        elif years < 20:
            buckets["tenToTwentyYears"] += 1
        else:
            buckets["moreThanTwentyYears"] += 1
    return buckets
