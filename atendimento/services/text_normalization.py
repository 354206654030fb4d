import re
import unicodedata


_ALIAS_PATTERNS = (
    (r"\bcoca\b(?!\s+cola)", "coca cola"),
    (r"\brefri\b", "refrigerante"),
    (r"\brefris\b", "refrigerantes"),
    (r"\bsem\s+acucar\b", "zero"),
    (r"\b(\d+)\s*l\b", r"\1 litros"),
    (r"\b(\d+)\s*litro\b", r"\1 litros"),
    (r"\b(\d+)\s*ml\b", r"\1 ml"),
    (r"\b(\d+)\s*g\b", r"\1 gramas"),
    (r"\bund?\b", "unidade"),
    (r"\bunids?\b", "unidade"),
    (r"\bpct\b", "pacote"),
    (r"\bx\s+(burguer|burger|salada|bacon|tudo|egg)\b", r"x\1"),
)


def _apply_aliases(text: str) -> str:
    for pattern, replacement in _ALIAS_PATTERNS:
        text = re.sub(pattern, replacement, text)
    return text


def strip_accents(text: str) -> str:
    text = unicodedata.normalize("NFKD", text)
    return "".join(char for char in text if not unicodedata.combining(char))


def normalize(text: str) -> str:
    text = strip_accents((text or "").lower())
    text = re.sub(r"[-_]", " ", text)
    text = re.sub(r"[^\w\s]", " ", text)
    text = re.sub(r"\s+", " ", text).strip()
    if not text:
        return ""
    text = _apply_aliases(text)
    text = re.sub(r"\s+", " ", text).strip()
    return text


def tokenize(text: str) -> list[str]:
    normalized = normalize(text)
    if not normalized:
        return []
    return normalized.split(" ")


def singularize(token: str) -> str:
    """Reduz plurais do português para o singular.

    Cada regra exige um tamanho mínimo de token para não mutilar palavras
    curtas ("mais", "gas", "pes").
    """
    word = strip_accents((token or "").lower())
    size = len(word)
    if size >= 5 and (word.endswith("oes") or word.endswith("aes")):
        return word[:-3] + "ao"
    if size >= 4 and word in {"paes", "maes"}:
        return word[:-3] + "ao"
    if size >= 6 and word.endswith("eis"):
        return word[:-3] + "el"
    if size >= 6 and word.endswith("ais"):
        return word[:-3] + "al"
    if size >= 5 and word.endswith("is"):
        return word[:-2] + "il"
    if size >= 5 and word.endswith("res"):
        return word[:-2]
    if size >= 5 and (word.endswith("ses") or word.endswith("zes")):
        return word[:-2]
    if size >= 4 and word.endswith("s") and not word.endswith(("ss", "us")):
        return word[:-1]
    return word


def canonical_tokens(text: str) -> list[str]:
    return [singularize(token) for token in tokenize(text)]


def edit_distance(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i] + [0] * len(b)
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current[j] = min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + cost,
            )
        previous = current
    return previous[-1]


def is_near_match(a: str, b: str) -> bool:
    if not a or not b:
        return False
    if abs(len(a) - len(b)) > 1:
        return False
    max_edits = max(1, min(len(a), len(b)) // 5)
    return edit_distance(a, b) <= max_edits
