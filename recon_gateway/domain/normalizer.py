"""
Normalization of heterogeneously-shaped source payloads into ExternalRecords.

The bookkeeping source is inconsistent about field names: the same logical
value can appear under several keys, or nested one level inside a wrapper
object ("pagamento", "parcela", "venda", "cliente"). Each logical field is
read by probing an ordered list of key paths; the first present, non-null,
non-blank value wins.
"""

import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from recon_gateway.domain.exceptions import NormalizationError
from recon_gateway.domain.models import Direction, ExternalRecord, RecordKind
from recon_gateway.utils.date_utils import parse_date
from recon_gateway.utils.money import parse_amount

_MISSING = object()

EXTERNAL_ID_PATHS = ("id", "codigo", "external_id", "externalId", "parcela.id", "pagamento.id")
AMOUNT_PATHS = (
    "valor_total",
    "valorTotal",
    "valor",
    "amount",
    "total",
    "parcela.valor",
    "pagamento.valor",
)
OCCURRED_DATE_PATHS = (
    "data",
    "data_venda",
    "occurredDate",
    "occurred_date",
    "date",
    "data_inclusao",
    "pagamento.data",
    "parcela.data",
)
DUE_DATE_PATHS = (
    "data_vencimento",
    "dataVencimento",
    "vencimento",
    "dueDate",
    "due_date",
    "parcela.data_vencimento",
    "pagamento.data_vencimento",
    "pagamento.dataVencimento",
)
COUNTERPARTY_PATHS = (
    "nome_cliente",
    "cliente.nome",
    "cliente",
    "counterpartyName",
    "counterparty_name",
    "nome_fornecedor",
    "fornecedor.nome",
    "fornecedor",
)
PLAN_ID_PATHS = ("venda_id", "vendaId", "planId", "plan_id", "venda.id", "sale_id")
INSTALLMENT_INDEX_PATHS = (
    "numero_parcela",
    "installmentIndex",
    "installment_index",
    "numero",
    "parcela.numero",
    "parcela",
)
INSTALLMENT_COUNT_PATHS = (
    "total_parcelas",
    "quantidade_parcelas",
    "installmentCount",
    "installment_count",
    "parcelas",
    "pagamento.parcelas",
)
PLAN_TOTAL_PATHS = ("valor_venda", "planTotal", "plan_total", "venda.valor_total")
DIRECTION_PATHS = ("tipo", "type", "natureza")
KIND_PATHS = ("kind", "tipo_registro")
PAYMENT_METHOD_PATHS = (
    "forma_pagamento",
    "nome_forma_pagamento",
    "formaPagamento",
    "payment_method",
    "pagamento.forma_pagamento",
    "pagamento.nome_forma_pagamento",
    "pagamento.formaPagamento",
)
DESCRIPTION_PATHS = ("descricao", "description", "historico", "observacoes")

PRODUCT_NAME_PATHS = ("nome_produto", "produtoNome", "nome", "produto")
PRODUCT_QUANTITY_PATHS = ("quantidade", "qtd", "quantity")
PRODUCT_UNIT_PRICE_PATHS = ("valor_unitario", "precoUnitario", "valorUnitario", "preco_unitario", "valor_venda")
PRODUCT_TOTAL_PATHS = ("valor_total", "total", "valorTotal")

_INCOME_WORDS = {"receita", "recebimento", "income", "credit", "credito", "entrada"}
_EXPENSE_WORDS = {"despesa", "pagamento", "expense", "debit", "debito", "saida"}


@dataclass(frozen=True)
class ProductLine:
    name: str
    quantity: Decimal
    unit_price: Decimal
    total: Decimal


@dataclass(frozen=True)
class PaymentLine:
    method: Optional[str]
    installments: int
    amount: Optional[Decimal]
    due_date: Optional[Any]


def probe(raw: Mapping[str, Any], paths: Sequence[str], scalar: bool = True) -> Any:
    """
    Return the first present, non-null, non-blank value among key paths.

    A dotted path ("pagamento.valor") descends one wrapper object. With
    scalar=True, nested objects and lists are skipped so that a wrapper
    sharing a field's name (e.g. "parcela": {...}) does not shadow it.
    """
    for path in paths:
        value = _lookup(raw, path)
        if value is _MISSING or value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        if scalar and isinstance(value, (dict, list)):
            continue
        return value
    return _MISSING


def _lookup(raw: Mapping[str, Any], path: str) -> Any:
    current: Any = raw
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _as_list(value: Any) -> List[Any]:
    """Accept a list, a single object, or a JSON-encoded string of either"""
    if value is None:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return []
    if isinstance(value, dict):
        return [value]
    if isinstance(value, list):
        return [v for v in value if isinstance(v, dict)]
    return []


def _read_int(value: Any, field: str) -> int:
    try:
        number = parse_amount(value)
    except ValueError as e:
        raise NormalizationError(field, "malformed", value) from e
    if number != number.to_integral_value():
        raise NormalizationError(field, "malformed", value)
    return int(number)


def _read_amount(value: Any, field: str) -> Decimal:
    try:
        return parse_amount(value)
    except ValueError as e:
        raise NormalizationError(field, "malformed", value) from e


def _read_date(value: Any, field: str):
    try:
        return parse_date(value)
    except (ValueError, TypeError) as e:
        raise NormalizationError(field, "malformed", value) from e


def normalize_products(raw: Any) -> List[ProductLine]:
    """Product lines of a sale; quantity defaults to 1, total to quantity x unit price"""
    lines = []
    for item in _as_list(raw):
        product = item["produto"] if isinstance(item.get("produto"), dict) else item

        name = probe(product, PRODUCT_NAME_PATHS)
        quantity = probe(product, PRODUCT_QUANTITY_PATHS)
        unit_price = probe(product, PRODUCT_UNIT_PRICE_PATHS)
        total = probe(product, PRODUCT_TOTAL_PATHS)

        quantity = Decimal(1) if quantity is _MISSING else _read_amount(quantity, "quantity")
        unit_price = Decimal(0) if unit_price is _MISSING else _read_amount(unit_price, "unit_price")
        total = quantity * unit_price if total is _MISSING else _read_amount(total, "product_total")

        lines.append(
            ProductLine(
                name=str(name) if name is not _MISSING else "",
                quantity=quantity,
                unit_price=unit_price,
                total=total,
            )
        )
    return lines


def normalize_payments(raw: Any) -> List[PaymentLine]:
    """Payment entries of a sale, flat or wrapped as {"pagamento": {...}}"""
    lines = []
    for item in _as_list(raw):
        payment = item["pagamento"] if isinstance(item.get("pagamento"), dict) else item

        method = probe(payment, PAYMENT_METHOD_PATHS + ("nome",))
        installments = probe(payment, ("parcelas", "quantidade_parcelas"))
        amount = probe(payment, ("valor", "total", "valorTotal"))
        due = probe(payment, ("data_vencimento", "dataVencimento", "data"))

        lines.append(
            PaymentLine(
                method=str(method) if method is not _MISSING else None,
                installments=1 if installments is _MISSING else _read_int(installments, "installment_count"),
                amount=None if amount is _MISSING else _read_amount(amount, "payment_amount"),
                due_date=None if due is _MISSING else _read_date(due, "due_date"),
            )
        )
    return lines


def _infer_direction(raw: Mapping[str, Any], kind: RecordKind) -> Direction:
    value = probe(raw, DIRECTION_PATHS)
    if value is not _MISSING:
        word = str(value).strip().lower()
        if word in _INCOME_WORDS:
            return Direction.INCOME
        if word in _EXPENSE_WORDS:
            return Direction.EXPENSE
    return Direction.EXPENSE if kind == RecordKind.PAYMENT else Direction.INCOME


def _infer_kind(raw: Mapping[str, Any], in_plan: bool) -> RecordKind:
    explicit = probe(raw, KIND_PATHS)
    if explicit is not _MISSING:
        try:
            return RecordKind(str(explicit).strip().upper())
        except ValueError as e:
            raise NormalizationError("kind", "malformed", explicit) from e
    if in_plan:
        return RecordKind.INSTALLMENT
    if probe(raw, DIRECTION_PATHS) is not _MISSING:
        return RecordKind.PAYMENT
    return RecordKind.SALE


def _shape_hints(raw: Mapping[str, Any]) -> Tuple[str, ...]:
    hints = set()
    for key, value in raw.items():
        hints.add(key)
        if isinstance(value, Mapping):
            hints.update(f"{key}.{inner}" for inner in value)
    return tuple(sorted(hints))


def normalize(raw: Dict[str, Any], kind: Optional[RecordKind] = None) -> ExternalRecord:
    """
    Convert a raw source payload into a canonical ExternalRecord.

    Args:
        raw: Source payload (sale, payment or installment)
        kind: Record kind when the caller knows it (e.g. from a webhook event)

    Raises:
        NormalizationError: Missing or malformed amount, date or identity,
            or an inconsistent installment index/count
    """
    if not isinstance(raw, Mapping):
        raise NormalizationError("record", "malformed", raw)

    index_value = probe(raw, INSTALLMENT_INDEX_PATHS)
    if kind is None:
        in_plan = index_value is not _MISSING and probe(raw, PLAN_ID_PATHS) is not _MISSING
        kind = _infer_kind(raw, in_plan)
    # "numero" on a sale or payment is a document number, not a position
    if kind == RecordKind.INSTALLMENT and index_value is not _MISSING:
        installment_index = _read_int(index_value, "installment_index")
    else:
        installment_index = None

    payments = normalize_payments(raw.get("pagamentos"))
    products = normalize_products(raw.get("produtos") or raw.get("itens"))
    first_payment = payments[0] if payments else None

    # Amount
    amount_value = probe(raw, AMOUNT_PATHS)
    if amount_value is _MISSING:
        raise NormalizationError("amount", "missing")
    amount = _read_amount(amount_value, "amount")
    if amount < 0:
        raise NormalizationError("amount", "negative", amount_value)

    # Dates: an installment may only carry its due date
    due_value = probe(raw, DUE_DATE_PATHS)
    due_date = None if due_value is _MISSING else _read_date(due_value, "due_date")
    if due_date is None and first_payment is not None and kind != RecordKind.SALE:
        due_date = first_payment.due_date

    occurred_value = probe(raw, OCCURRED_DATE_PATHS)
    if occurred_value is _MISSING:
        if due_date is None:
            raise NormalizationError("date", "missing")
        occurred_date = due_date
    else:
        occurred_date = _read_date(occurred_value, "date")

    # Plan membership
    plan_value = probe(raw, PLAN_ID_PATHS)
    plan_id = None if plan_value is _MISSING else str(plan_value).strip()

    count_value = probe(raw, INSTALLMENT_COUNT_PATHS)
    installment_count = None if count_value is _MISSING else _read_int(count_value, "installment_count")
    if installment_count is None and kind == RecordKind.SALE:
        nested = _as_list(raw.get("parcelas"))
        installment_count = len(nested) or None
    if installment_count is None and first_payment is not None and first_payment.installments > 1:
        installment_count = first_payment.installments

    if installment_index is not None and installment_index < 1:
        raise NormalizationError("installment_index", "out_of_range", installment_index)
    if installment_count is not None and installment_count < 1:
        raise NormalizationError("installment_count", "out_of_range", installment_count)
    if installment_index is not None and installment_count is not None and installment_index > installment_count:
        raise NormalizationError("installment_index", "out_of_range", installment_index)

    # Identity
    id_value = probe(raw, EXTERNAL_ID_PATHS)
    if id_value is not _MISSING:
        external_id = str(id_value).strip()
    elif plan_id and installment_index is not None:
        external_id = f"{plan_id}-{installment_index}"
    else:
        raise NormalizationError("external_id", "missing")

    if kind == RecordKind.SALE and plan_id is None:
        plan_id = external_id

    plan_total_value = probe(raw, PLAN_TOTAL_PATHS)
    if plan_total_value is not _MISSING:
        plan_total = _read_amount(plan_total_value, "plan_total")
    elif kind == RecordKind.SALE:
        plan_total = amount
    else:
        plan_total = None

    # Descriptive fields
    counterparty = probe(raw, COUNTERPARTY_PATHS)
    description = probe(raw, DESCRIPTION_PATHS)
    if description is _MISSING:
        names = [p.name for p in products if p.name]
        description = ", ".join(names) if names else None

    method = probe(raw, PAYMENT_METHOD_PATHS)
    if method is _MISSING:
        method = first_payment.method if first_payment else None

    return ExternalRecord(
        external_id=external_id,
        kind=kind,
        amount=amount,
        occurred_date=occurred_date,
        due_date=due_date,
        counterparty_name=None if counterparty is _MISSING else str(counterparty).strip(),
        description=description if description is None else str(description).strip(),
        plan_id=plan_id,
        installment_index=installment_index,
        installment_count=installment_count,
        plan_total=plan_total,
        direction=_infer_direction(raw, kind),
        payment_method=None if method is None else str(method),
        raw_shape_hints=_shape_hints(raw),
    )


def nested_installments(raw: Mapping[str, Any], sale: ExternalRecord) -> List[Dict[str, Any]]:
    """
    Installment payloads embedded in a sale under "parcelas".

    Each entry (flat or wrapped as {"parcela": {...}}) is completed with the
    sale's plan id, the entry count, the sale amount as plan total, the
    entry's position and the sale's date and customer where it lacks them.
    """
    if sale.kind != RecordKind.SALE or not isinstance(raw, Mapping):
        return []
    entries = _as_list(raw.get("parcelas"))
    children = []
    for position, item in enumerate(entries, start=1):
        entry = item["parcela"] if isinstance(item.get("parcela"), dict) else item
        child = dict(entry)
        defaults = (
            (PLAN_ID_PATHS, "plan_id", sale.plan_id),
            (INSTALLMENT_INDEX_PATHS, "installment_index", position),
            (INSTALLMENT_COUNT_PATHS, "installment_count", len(entries)),
            (PLAN_TOTAL_PATHS, "plan_total", str(sale.amount)),
            (COUNTERPARTY_PATHS, "counterparty_name", sale.counterparty_name),
        )
        for paths, key, value in defaults:
            if value is not None and probe(entry, paths) is _MISSING:
                child[key] = value
        if probe(entry, OCCURRED_DATE_PATHS) is _MISSING and probe(entry, DUE_DATE_PATHS) is _MISSING:
            child["date"] = sale.occurred_date.isoformat()
        children.append(child)
    return children


def raw_external_id(raw: Any) -> Optional[str]:
    """Best-effort identity of a payload that failed to normalize"""
    if not isinstance(raw, Mapping):
        return None
    value = probe(raw, EXTERNAL_ID_PATHS)
    return None if value is _MISSING else str(value)
