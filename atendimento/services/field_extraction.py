from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from atendimento.schemas.conversation import (
    MODE_DELIVERY,
    MODE_TAKEOUT,
    PAYMENT_CARD,
    PAYMENT_CASH,
    PAYMENT_PIX,
    PAYMENT_VOUCHER,
)
from atendimento.schemas.extraction import AddressUpdate, Correction, ExtractedItem, PartialUpdate
from atendimento.services.text_normalization import normalize, strip_accents

logger = logging.getLogger(__name__)


_NUMBER_WORDS = {
    "um": 1,
    "uma": 1,
    "dois": 2,
    "duas": 2,
    "tres": 3,
    "quatro": 4,
    "cinco": 5,
    "seis": 6,
    "sete": 7,
    "oito": 8,
    "nove": 9,
    "dez": 10,
    "onze": 11,
    "doze": 12,
    "duzia": 12,
}

_MULTIPLICITY_WORDS = {word for word, value in _NUMBER_WORDS.items() if value >= 2} | {"par"}

_QTY_TOKEN = r"\d{1,3}|" + "|".join(sorted(_NUMBER_WORDS, key=len, reverse=True))

_LEADING_FILLERS = re.compile(
    r"^(?:(?:eu|ai|entao|oi|ola|opa|bom dia|boa tarde|boa noite|por favor|pfv|pf|"
    r"quero|queria|quer|gostaria de|gostaria|vou querer|vou de|vou|me ve|me da|me manda|manda|"
    r"pode ser|pode|fazer um pedido de|fazer um pedido|um pedido de|pedido de|pedir|"
    r"tambem|mais|so|somente|apenas|adiciona|adicionar|adicione|acrescenta|acrescentar|acrescente|coloca|"
    r"colocar|bota|faltou|esqueci|esqueci de pedir|e)\s+)+"
)
_TRAILING_FILLERS = re.compile(
    r"(?:\s+(?:por favor|pfv|pf|pra mim|para mim|tambem|ai|obrigad[oa]|valeu|tb|tbm))+$"
)
_LOGISTICS_TAIL = re.compile(
    r"\s+(?:(?:para|pra|p)\s+(?:entrega|entregar|retirada|retirar|viagem|levar|delivery)|"
    r"(?:no|na|em|via|pelo|pela|com)\s+(?:pix|cartao|credito|debito|dinheiro)|"
    r"pagamento|forma de pagamento)\b.*$"
)
_LEADING_ARTICLES = re.compile(r"^(?:(?:o|a|os|as|de|do|da|dos|das|uns|umas)\s+)+")

_LOGISTICS_WORDS = {
    "rua", "avenida", "av", "travessa", "alameda", "estrada", "rodovia", "praca", "bairro",
    "cep", "numero", "entrega", "entregar", "delivery", "retirada", "retirar", "retiro",
    "buscar", "balcao", "pix", "cartao", "credito", "debito", "dinheiro", "troco",
    "pagamento", "pagar", "paguei", "comprovante", "nome", "chamo", "obs", "observacao",
    "observacoes", "complemento", "endereco", "cidade", "estado",
}
_NON_ITEM_WORDS = {
    "saber", "voces", "vcs", "vc", "voce", "funciona", "funcionam", "aberto", "abertos",
    "horario", "hoje", "aceita", "aceitam", "entregam", "demora", "demorar", "quanto",
    "quanta", "qual", "quais", "quando", "onde", "como", "porque", "obrigado", "obrigada",
    "valeu", "atendente", "humano", "cancelar", "cancela", "sim", "nao", "ok", "corrige",
    "corrigir", "corrija", "muda", "mudar", "altera", "alterar", "troca", "trocar", "quantidade",
    "verdade", "dizer",
}

_GREETING_RE = re.compile(r"^(?:oi+|ola|opa|eai|e ai|hey|salve|bom dia|boa tarde|boa noite|tudo bem|tudo bom)\b")
_CLOSING_RE = re.compile(
    r"^(?:so|e so|so isso|e isso|e so isso|era isso|era so isso|so isso mesmo|isso e tudo|e tudo|"
    r"mais nada|nada mais|por enquanto e so|pode fechar|fechar|fecha|finalizar|pode finalizar|"
    r"obrigad[oa]|valeu|vlw|nao|nada)$"
)
_FINISH_RE = re.compile(
    r"\b(?:so isso|e so isso|era so isso|era isso|isso e tudo|nao quero mais nada|mais nada|nada mais|pode fechar|"
    r"fechar o pedido|fecha o pedido|fechar pedido|pode finalizar|finalizar o pedido|finalizar pedido|"
    r"por enquanto e so|terminei|so esse|so esses|so essa|so essas)\b"
)
_FINISH_EXACT = {"so", "e so", "e isso", "e tudo", "finalizar", "fechar", "fecha", "so isso obrigado"}

_YES_EXACT = {
    "s", "sim", "ok", "okay", "isso", "certo", "confirmo", "confirmar", "confirmado", "fechado",
    "pode", "pode sim", "sim pode", "isso mesmo", "isso ai", "claro", "beleza", "blz",
    "perfeito", "correto", "exato", "pode confirmar", "pode mandar", "pode enviar", "manda",
    "bora", "ta bom", "ta certo", "esta certo", "esta correto", "uhum", "aham", "positivo",
}
_YES_TAIL_WORDS = {
    "sim", "pode", "mandar", "manda", "enviar", "confirmar", "confirma", "isso", "mesmo", "por",
    "favor", "obrigado", "obrigada", "ok", "ta", "certo", "beleza", "claro", "fechar",
    "fechado", "perfeito", "correto", "tudo", "esta", "ai",
}
_NO_EXACT = {
    "n", "nao", "negativo", "nada", "nao quero", "agora nao", "nao obrigado", "nao obrigada",
    "nao valeu", "nao precisa", "dispenso", "nem", "errado", "esta errado", "ta errado",
    "nao esta certo", "nao e isso",
}
_NO_TAIL_WORDS = {
    "obrigado", "obrigada", "valeu", "precisa", "quero", "so", "isso", "mesmo", "ta", "bom",
    "por", "enquanto", "nada", "mais", "esta", "certo", "e", "obg",
}

_QUESTION_RE = re.compile(
    r"^(?:qual|quais|quando|como|onde|quanto|quantos|quantas|que horas|voces tem|vcs tem|tem|"
    r"aceita|aceitam|entregam|posso)\b|\b(?:cardapio|preco|precos|valor|horario|taxa de entrega)\b"
)
_CANCEL_RE = re.compile(
    r"\b(?:cancela(?:r|e)?\s+(?:o\s+|meu\s+)?(?:pedido|tudo|compra)|quero cancelar|pode cancelar|"
    r"desisto|desistir|desisti|esquece o pedido|esquece tudo)\b"
)
_CANCEL_EXACT = {"cancela", "cancelar", "cancele", "cancelado", "cancelamento", "cancela ai", "cancela tudo"}
_FRUSTRATION_RE = re.compile(
    r"\b(?:raiva|horrivel|pessim[oa]|absurdo|ridiculo|palhacada|lixo|nao aguento|que merda|porra|"
    r"vergonha|descaso)\b"
)
_PAYMENT_CONFIRMED_RE = re.compile(
    r"\b(?:paguei|ja paguei|ja pago|ta pago|esta pago|comprovante|pagamento feito|pagamento realizado|"
    r"pix feito|fiz o pix|mandei o pix|enviei o pix|transferi|ja transferi)\b"
)
_ALTERNATE_PAYMENT_RE = re.compile(
    r"\b(?:trocar|troca|mudar|muda|alterar|altera)\s+(?:a\s+)?(?:forma de\s+)?(?:pagamento|pagar)|"
    r"\b(?:prefiro|vou|quero|posso)\s+pagar\s+(?:no|na|em|com)\b|\bpagar\s+(?:no|na|em|com)\s+(?:outr[ao])"
)
_MENU_RE = re.compile(
    r"\b(?:cardapio|menu|o que (?:voces |vcs )?tem|quais (?:os |as )?(?:sabores|opcoes|produtos|lanches|pizzas))\b"
)
_REPEAT_RE = re.compile(
    r"\b(?:mesmo pedido|o de sempre|repetir|repete|pedido anterior|ultimo pedido|igual (?:da|ao) ultim[ao]|"
    r"mesma coisa)\b"
)
_HUMAN_RE = re.compile(r"\b(?:atendente|humano|pessoa|falar com alguem|gerente|responsavel)\b")
_INCREMENTAL_RE = re.compile(
    r"\b(?:mais(?!\s+(?:nada|alguma|algum|nenhum|um pouco))|adiciona\w*|adicione|acrescenta\w*|acrescente|"
    r"tambem|faltou|esqueci)\b"
)
_NEGATED_INCREMENTAL_RE = re.compile(r"\b(?:nada mais|nao quero mais|nao tem mais)\b")

_REMOVAL_RE = re.compile(
    r"\b(?:tira|tirar|tire|remove|remover|remova|exclui|excluir|exclua|apaga|apagar|retira\s+(?:o|a|os|as))\s+"
    r"(?:(?:o|a|os|as|um|uma|aquele|aquela|esse|essa)\s+)?(.+)$"
)

_TAKEOUT_RE = re.compile(
    r"\b(?:retirada|retirar|retiro|retira no local|vou buscar|busco|buscar ai|buscar no local|"
    r"balcao|pra viagem|para viagem|pego ai|pegar ai|pegar no local)\b"
)
_DELIVERY_RE = re.compile(r"\b(?:entrega|entregar|entregue|delivery|manda pra casa|manda aqui)\b")
_MODE_NOISE_RE = re.compile(
    r"\b(?:taxa de entrega|tempo de entrega|prazo de entrega|voces entregam|vcs entregam|entregam|"
    r"fazem entrega|faz entrega)\b"
)

_PAYMENT_PATTERNS = (
    (PAYMENT_PIX, re.compile(r"\bpix\b")),
    (PAYMENT_CARD, re.compile(r"\b(?:cartao|credito|debito|maquininha|maquina)\b")),
    (PAYMENT_CASH, re.compile(r"\b(?:dinheiro|especie|troco)\b")),
    (PAYMENT_VOUCHER, re.compile(r"\b(?:vale refeicao|vale alimentacao|vr|va|ticket|sodexo|alelo)\b")),
)

_NAME_RE = re.compile(
    r"(?:meu nome (?:é|e)|me chamo|chamo-me|pode colocar no nome de|no nome de|nome\s*:)\s*"
    r"([A-Za-zÀ-ÿ][A-Za-zÀ-ÿ']*(?:\s+[A-Za-zÀ-ÿ][A-Za-zÀ-ÿ']*){0,3})",
    re.IGNORECASE,
)
_NAME_STOP_WORDS = {"e", "quero", "queria", "vou", "meu", "minha", "pra", "para", "no", "na", "rua", "com"}
_NOTES_RE = re.compile(
    r"(?:obs|observa(?:ç|c)(?:ão|ao|ões|oes)|complemento)\s*[:\-]\s*(.{3,200})",
    re.IGNORECASE,
)
_NO_NOTES_RE = re.compile(r"\bsem (?:observa|complemento|adicional)")
_WITHOUT_RE = re.compile(r"\s+(sem\s+.+)$")

_STREET_RE = re.compile(
    r"\b(rua|r\.|avenida|av\.?|travessa|tv\.?|alameda|estrada|rodovia|praça|praca|largo|servidão|servidao)\s+"
    r"([^,;\n\d]+?)\s*(?=,|;|\n|$|\bn(?:º|°|o|umero|úmero)?\.?\s*\d|\d|\s-\s|\bbairro\b|\bcep\b)",
    re.IGNORECASE,
)
_STREET_KIND = {"r.": "Rua", "av": "Avenida", "av.": "Avenida", "tv": "Travessa", "tv.": "Travessa"}
_NUMBER_AFTER_STREET_RE = re.compile(
    r"^\s*,?\s*(?:n(?:º|°|o|umero|úmero)?\.?\s*)?(\d{1,5}[a-zA-Z]?)\b", re.IGNORECASE
)
_NUMBER_RE = re.compile(
    r"\b(?:n(?:º|°|o)|n\.|numero|número|num|casa)\s*:?\s*(\d{1,5}[a-zA-Z]?)\b", re.IGNORECASE
)
_NEIGHBORHOOD_RE = re.compile(
    r"\bbairro\s*:?\s*(?:(?:do|da|de|dos|das)\s+)?([^,;\n]+?)\s*(?=,|;|\n|$|\bcep\b|\bcidade\b|\s-\s|/)",
    re.IGNORECASE,
)
_CITY_STATE_RE = re.compile(r"([A-Za-zÀ-ÿ][A-Za-zÀ-ÿ ]{2,40}?)\s*[/\-]\s*([A-Z]{2})\b")
_CITY_RE = re.compile(r"\bcidade\s*:?\s*([A-Za-zÀ-ÿ][A-Za-zÀ-ÿ ]{2,40}?)\s*(?=,|;|\n|$|/|-)", re.IGNORECASE)
_POSTAL_CODE_RE = re.compile(r"\b(\d{5})-?(\d{3})\b")

_CORRECTION_PATTERNS = (
    re.compile(rf"\b(?:so|somente|apenas)\s+(?P<qty>{_QTY_TOKEN})\b(?:\s+(?P<target>.+))?$"),
    re.compile(
        rf"\b(?:corrige|corrigir|corrija|muda|mudar|mude|altera|alterar|altere|troca|trocar|troque)\s+"
        rf"(?:(?:a\s+quantidade\s+)?(?:d[oae]s?\s+)?(?P<target>.+?)\s+)?(?:para|pra|pro)\s+(?P<qty>{_QTY_TOKEN})\b"
    ),
    re.compile(rf"\b(?:e|era|sao|eram)\s+(?:so|somente|apenas)\s+(?P<qty>{_QTY_TOKEN})\b(?:\s+(?P<target>.+))?$"),
    re.compile(rf"\b(?:na verdade|quer dizer|alias)\s+(?:e\s+|sao\s+)?(?P<qty>{_QTY_TOKEN})\s+(?P<target>.+)$"),
    re.compile(rf"^(?P<qty>{_QTY_TOKEN})\s+(?:so|somente|apenas)$"),
)


@dataclass(frozen=True)
class MessageSignals:
    yes: bool = False
    no: bool = False
    question: bool = False
    finish: bool = False
    cancel: bool = False
    frustration: bool = False
    payment_confirmed: bool = False
    alternate_payment: bool = False
    menu_request: bool = False
    repeat_request: bool = False
    greeting: bool = False
    human_request: bool = False


def _parse_qty(token: str | None) -> int | None:
    if not token:
        return None
    token = strip_accents(token.strip().lower())
    if token.isdigit():
        return int(token)
    return _NUMBER_WORDS.get(token)


def _clean_text(value: str) -> str:
    return re.sub(r"\s+", " ", (value or "").strip())


def _lowered(text: str) -> str:
    return _clean_text(strip_accents((text or "").lower()))


def detect_yes(text: str) -> bool:
    normalized = normalize(text)
    if not normalized or detect_no(text):
        return False
    if normalized in _YES_EXACT:
        return True
    if "confirm" in normalized:
        return True
    tokens = normalized.split(" ")
    if tokens[0] in {"sim", "isso", "ok", "pode", "certo", "perfeito"} and all(
        token in _YES_TAIL_WORDS for token in tokens[1:]
    ):
        return True
    return False


def detect_no(text: str) -> bool:
    normalized = normalize(text)
    if not normalized:
        return False
    if normalized in _NO_EXACT:
        return True
    if "nao quero" in normalized or "nao confirmo" in normalized:
        return True
    tokens = normalized.split(" ")
    return tokens[0] in {"nao", "n"} and all(token in _NO_TAIL_WORDS for token in tokens[1:])


def detect_question(text: str) -> bool:
    if "?" in (text or ""):
        return True
    return bool(_QUESTION_RE.search(normalize(text)))


def detect_finish(text: str) -> bool:
    normalized = normalize(text)
    if not normalized:
        return False
    return normalized in _FINISH_EXACT or bool(_FINISH_RE.search(normalized))


def detect_cancel(text: str) -> bool:
    normalized = normalize(text)
    if normalized in _CANCEL_EXACT:
        return True
    return bool(_CANCEL_RE.search(normalized))


def detect_signals(text: str) -> MessageSignals:
    normalized = normalize(text)
    return MessageSignals(
        yes=detect_yes(text),
        no=detect_no(text),
        question=detect_question(text),
        finish=detect_finish(text),
        cancel=detect_cancel(text),
        frustration=bool(_FRUSTRATION_RE.search(normalized)),
        payment_confirmed=bool(_PAYMENT_CONFIRMED_RE.search(normalized)),
        alternate_payment=bool(_ALTERNATE_PAYMENT_RE.search(normalized)),
        menu_request=bool(_MENU_RE.search(normalized)),
        repeat_request=bool(_REPEAT_RE.search(normalized)),
        greeting=bool(_GREETING_RE.search(normalized)),
        human_request=bool(_HUMAN_RE.search(normalized)),
    )


def has_multiplicity_marker(text: str) -> bool:
    normalized = normalize(text)
    for token in normalized.split(" "):
        # "2", "2x" e "x2" contam como quantidade explícita
        digits = re.fullmatch(r"x?(\d+)x?", token)
        if digits and int(digits.group(1)) >= 2:
            return True
        if token in _MULTIPLICITY_WORDS:
            return True
    return False


def has_incremental_cue(text: str) -> bool:
    normalized = normalize(text)
    if not normalized or _NEGATED_INCREMENTAL_RE.search(normalized):
        return False
    return bool(_INCREMENTAL_RE.search(normalized))


def _split_chunks(text: str) -> list[str]:
    parts = re.split(r"\s*(?:,|;|\+|\n)\s*", text or "")
    chunks: list[str] = []
    for part in parts:
        part = part.strip()
        if not part:
            continue
        segments = re.split(r"\s+e\s+", part, flags=re.IGNORECASE)
        buffer = ""
        for segment in segments:
            segment = segment.strip()
            if not segment:
                continue
            if not buffer:
                buffer = segment
                continue
            buffer_joins = re.search(r"\b(?:com|meia|metade)\b|\bc/", buffer.lower()) is not None
            segment_match = re.match(r"^(?P<qty>\d+|\w+)\b", segment)
            segment_qty = _parse_qty(segment_match.group("qty")) if segment_match else None
            if buffer_joins and not segment_qty:
                buffer = f"{buffer} e {segment}"
            else:
                chunks.append(buffer)
                buffer = segment
        if buffer:
            chunks.append(buffer)
    return chunks


def _is_rejected_chunk(raw_chunk: str, normalized: str) -> bool:
    if not normalized:
        return True
    if raw_chunk.rstrip().endswith("?"):
        return True
    if _GREETING_RE.match(normalized) and len(normalized.split(" ")) <= 3:
        return True
    if _CLOSING_RE.match(normalized) or _FINISH_RE.search(normalized):
        return True
    if normalized in _YES_EXACT or normalized in _NO_EXACT:
        return True
    if _REMOVAL_RE.search(normalized) or _CANCEL_RE.search(normalized) or normalized in _CANCEL_EXACT:
        return True
    if _PAYMENT_CONFIRMED_RE.search(normalized) or _HUMAN_RE.search(normalized):
        return True
    return False


def _parse_item_chunk(raw_chunk: str) -> tuple[ExtractedItem | None, str | None]:
    normalized = normalize(raw_chunk)
    if _is_rejected_chunk(raw_chunk, normalized):
        return None, None

    text = _LOGISTICS_TAIL.sub("", normalized)
    text = _LEADING_FILLERS.sub("", text)
    text = _TRAILING_FILLERS.sub("", text).strip()
    if not text:
        return None, None

    quantity = 1
    match = re.match(rf"^(?P<qty>{_QTY_TOKEN})\s*x?\s+(?P<name>.+)$", text)
    if match:
        quantity = _parse_qty(match.group("qty")) or 1
        text = match.group("name")
    else:
        match = re.match(r"^(?P<name>.+?)\s+x\s*(?P<qty>\d{1,3})$", text)
        if match:
            quantity = _parse_qty(match.group("qty")) or 1
            text = match.group("name")

    note = None
    without = _WITHOUT_RE.search(text)
    if without and not _NO_NOTES_RE.search(without.group(1)):
        note = without.group(1)
        text = text[: without.start()]

    text = _LEADING_ARTICLES.sub("", text).strip()
    tokens = text.split(" ") if text else []
    if not tokens or len(tokens) > 8:
        return None, None
    if any(token in _LOGISTICS_WORDS or token in _NON_ITEM_WORDS for token in tokens):
        return None, None
    if not re.search(r"[a-z]", text) or len(text) < 2:
        return None, None
    if quantity < 1:
        return None, None
    return ExtractedItem(name=text, quantity=quantity), note


def extract_items(text: str) -> tuple[list[ExtractedItem], list[str]]:
    items: list[ExtractedItem] = []
    notes: list[str] = []
    for chunk in _split_chunks(text):
        item, note = _parse_item_chunk(chunk)
        if item is None:
            continue
        items.append(item)
        if note:
            notes.append(f"{item.name}: {note}")

    if not items:
        return [], notes

    # Sem marcador de multiplicidade no texto, toda quantidade é 1.
    if not has_multiplicity_marker(text):
        items = [item.model_copy(update={"quantity": 1}) for item in items]
    if has_incremental_cue(text):
        items = [item.model_copy(update={"incremental": True}) for item in items]
    return items, notes


def extract_removals(text: str) -> list[str]:
    removals: list[str] = []
    for chunk in _split_chunks(text):
        match = _REMOVAL_RE.search(normalize(chunk))
        if not match:
            continue
        name = _TRAILING_FILLERS.sub("", match.group(1)).strip()
        name = _LEADING_ARTICLES.sub("", name).strip()
        if name and name not in {"tudo", "pedido", "o pedido"}:
            removals.append(name)
    return removals


def _last_match_position(pattern: re.Pattern, text: str) -> int:
    positions = [match.start() for match in pattern.finditer(text)]
    return positions[-1] if positions else -1


def extract_mode(text: str) -> str | None:
    lowered = _MODE_NOISE_RE.sub(" ", normalize(text))
    takeout = _last_match_position(_TAKEOUT_RE, lowered)
    delivery = _last_match_position(_DELIVERY_RE, lowered)
    if takeout < 0 and delivery < 0:
        return None
    return MODE_TAKEOUT if takeout > delivery else MODE_DELIVERY


def extract_payment(text: str) -> str | None:
    lowered = normalize(text)
    best: tuple[int, str] | None = None
    for payment, pattern in _PAYMENT_PATTERNS:
        position = _last_match_position(pattern, lowered)
        if position >= 0 and (best is None or position > best[0]):
            best = (position, payment)
    return best[1] if best else None


def extract_customer_name(text: str) -> str | None:
    match = _NAME_RE.search(text or "")
    if not match:
        return None
    words: list[str] = []
    for word in match.group(1).split():
        if strip_accents(word.lower()) in _NAME_STOP_WORDS:
            break
        words.append(word)
    if not words:
        return None
    return " ".join(word.capitalize() for word in words)


def extract_notes(text: str) -> str | None:
    match = _NOTES_RE.search(text or "")
    if match:
        return _clean_text(match.group(1))
    if _NO_NOTES_RE.search(_lowered(text)):
        return "Sem observações"
    return None


def _title(value: str) -> str:
    words = _clean_text(value).split(" ")
    small = {"de", "da", "do", "das", "dos", "e"}
    return " ".join(word if word.lower() in small else word[:1].upper() + word[1:] for word in words if word)


def extract_address(text: str) -> AddressUpdate | None:
    raw = text or ""
    found: dict[str, str] = {}

    street = _STREET_RE.search(raw)
    if street:
        kind = street.group(1).lower()
        kind = _STREET_KIND.get(kind, kind.rstrip(".").capitalize())
        name = _clean_text(street.group(2))
        if name:
            found["street_name"] = f"{kind} {_title(name)}"
            number = _NUMBER_AFTER_STREET_RE.match(raw[street.end():])
            if number:
                found["street_number"] = number.group(1)

    if "street_number" not in found:
        number = _NUMBER_RE.search(raw)
        if number:
            found["street_number"] = number.group(1)

    neighborhood = _NEIGHBORHOOD_RE.search(raw)
    if neighborhood:
        value = _clean_text(neighborhood.group(1))
        if value:
            found["neighborhood"] = _title(value)

    city_state = _CITY_STATE_RE.search(raw)
    if city_state:
        city = _clean_text(city_state.group(1))
        city = re.sub(r"^(?:cidade\s*:?\s*|em\s+|de\s+)", "", city, flags=re.IGNORECASE)
        if city and strip_accents(city.lower()) not in _LOGISTICS_WORDS:
            found["city"] = _title(city)
        found["state"] = city_state.group(2)
    else:
        city = _CITY_RE.search(raw)
        if city:
            found["city"] = _title(city.group(1))

    postal_code = _POSTAL_CODE_RE.search(raw)
    if postal_code:
        found["postal_code"] = postal_code.group(1) + postal_code.group(2)

    if not found:
        return None
    return AddressUpdate(**found)


def detect_correction(text: str) -> Correction | None:
    """Reconhece frases de correção de quantidade ("só uma coca", "corrige para 2")."""
    normalized = normalize(text)
    if not normalized:
        return None
    for pattern in _CORRECTION_PATTERNS:
        match = pattern.search(normalized)
        if not match:
            continue
        qty = _parse_qty(match.group("qty"))
        if not qty:
            continue
        target = match.groupdict().get("target")
        if target:
            target = _TRAILING_FILLERS.sub("", target)
            target = _LEADING_ARTICLES.sub("", target).strip()
            if target in {"isso", "esse", "essa", "item", "itens", "quantidade"}:
                target = None
        return Correction(type="quantity", new_qty=qty, target=target or None)
    return None


def extract(text: str) -> PartialUpdate:
    try:
        items, item_notes = extract_items(text)
        notes = extract_notes(text)
        if item_notes:
            notes = "; ".join(([notes] if notes else []) + item_notes)
        return PartialUpdate(
            items=items or None,
            remove_items=extract_removals(text) or None,
            mode=extract_mode(text),
            payment=extract_payment(text),
            customer_name=extract_customer_name(text),
            notes=notes,
            address=extract_address(text),
        )
    except Exception:
        logger.exception("Falha na extração determinística")
        return PartialUpdate()
