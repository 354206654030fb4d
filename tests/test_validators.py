from atendimento.schemas.conversation import MODE_DELIVERY, MODE_TAKEOUT, PAYMENT_PIX, Address, CartItem, Transaction
from atendimento.services.validators import is_payment_valid, total_matches, validate_final_order


def _transaction(**overrides) -> Transaction:
    data = {
        "items": [CartItem(name="Pizza Calabresa", quantity=1, unit_price_cents=4990)],
        "mode": MODE_TAKEOUT,
        "payment": PAYMENT_PIX,
        "total_amount_cents": 4990,
    }
    data.update(overrides)
    return Transaction(**data)


def test_complete_takeout_order_is_valid():
    result = validate_final_order(_transaction())

    assert result.valid is True
    assert result.first_error is None


def test_delivery_without_address_lists_missing_parts():
    result = validate_final_order(_transaction(mode=MODE_DELIVERY))

    assert result.valid is False
    assert result.first_error == "Endereço incompleto, faltam: rua, número, bairro"


def test_delivery_address_not_required_when_tenant_disables_it():
    result = validate_final_order(_transaction(mode=MODE_DELIVERY), require_address=False)

    assert result.valid is True


def test_complete_delivery_address_passes():
    address = Address(street_name="Rua das Flores", street_number="123", neighborhood="Centro")

    assert validate_final_order(_transaction(mode=MODE_DELIVERY, address=address)).valid is True


def test_empty_cart_and_missing_mode_are_errors():
    result = validate_final_order(Transaction(payment=PAYMENT_PIX))

    assert "Nenhum item no pedido" in result.errors
    assert "Modalidade (retirada/entrega) não definida" in result.errors


def test_unknown_payment_is_rejected():
    assert is_payment_valid("BITCOIN") == (False, "Forma de pagamento desconhecida: BITCOIN")
    assert is_payment_valid("") == (False, "Forma de pagamento não informada")
    assert is_payment_valid(PAYMENT_PIX) == (True, None)


def test_total_mismatch_is_flagged_beyond_one_cent():
    assert total_matches(_transaction(total_amount_cents=4991)) is True

    result = validate_final_order(_transaction(total_amount_cents=100))
    assert result.total_mismatch is True
    assert result.first_error == "Total divergente: calculado=4990, declarado=100"
