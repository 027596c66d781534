"""
Invoices built from unbilled time entries, with line items and payments kept
in per-invoice subcollections. All amounts are integer cents.
"""
import logging
import re
from typing import Any, Dict, List, Optional

from audit import record_audit_event
from auth import AuthContext
from case_access import can_user_access_case
from common.database import DocumentStore, doc_path
from constants import (
    COLLECTION_CASES,
    COLLECTION_INVOICES,
    COLLECTION_LINE_ITEMS,
    COLLECTION_ORGANIZATIONS,
    COLLECTION_PAYMENTS,
    COLLECTION_TIME_ENTRIES,
)
from domain_events import emit_domain_event_with_outbox, user_actor
from entitlements import DenyReason, require_entitlement
from errors import ErrorCode, HandlerError
from response import callable_handler
from utils import (
    clamp_pagination,
    parse_int_in_range,
    parse_iso_datetime,
    parse_non_empty_string,
    parse_optional_string,
    require_org_id,
    to_iso,
    utcnow,
)

logger = logging.getLogger(__name__)

STATUS_DRAFT = 'draft'
STATUS_SENT = 'sent'
STATUS_PAID = 'paid'
STATUS_VOID = 'void'
INVOICE_STATUSES = (STATUS_DRAFT, STATUS_SENT, STATUS_PAID, STATUS_VOID)
UPDATABLE_STATUSES = (STATUS_DRAFT, STATUS_SENT, STATUS_VOID)

MAX_ENTRIES_PER_INVOICE = 200
CURRENCY_PATTERN = re.compile(r'^[A-Z]{3}$')


def invoices_collection(org_id: str) -> str:
    return doc_path(COLLECTION_ORGANIZATIONS, org_id, COLLECTION_INVOICES)


def invoice_path(org_id: str, invoice_id: str) -> str:
    return doc_path(invoices_collection(org_id), invoice_id)


def time_entries_collection(org_id: str) -> str:
    return doc_path(COLLECTION_ORGANIZATIONS, org_id, COLLECTION_TIME_ENTRIES)


def compute_amount_cents(duration_seconds: float, rate_cents: int) -> int:
    hours = duration_seconds / 3600
    return max(0, round(hours * rate_cents))


def normalize_currency(raw: Any) -> Optional[str]:
    if raw is not None and not isinstance(raw, str):
        return None
    currency = (parse_optional_string(raw, 8) or 'USD').upper()
    return currency if CURRENCY_PATTERN.match(currency) else None


def _parse_note(data: Dict[str, Any]) -> Optional[str]:
    if 'note' not in data:
        return None
    note = data['note']
    if note is None:
        return ''
    if not isinstance(note, str) or len(note.strip()) > 4000:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'Invalid note')
    return note.strip()


def _require_billing(store: DocumentStore, caller: AuthContext, org_id: str) -> None:
    require_entitlement(
        store, caller.uid, org_id, 'BILLING_INVOICING', 'billing.manage',
        messages={
            DenyReason.PLAN_LIMIT: 'Billing/Invoicing is not available in the current plan.',
            DenyReason.ORG_MEMBER: 'Not authorized',
            DenyReason.ROLE_BLOCKED: 'Not authorized',
        },
    )


def _require_case_access(store: DocumentStore, org_id: str, case_id: str, uid: str) -> None:
    if not can_user_access_case(store, org_id, case_id, uid).allowed:
        raise HandlerError(ErrorCode.NOT_FOUND, 'Case not found')


def _require_invoice_id(data: Dict[str, Any]) -> str:
    invoice_id = parse_non_empty_string(data.get('invoiceId'), 120)
    if invoice_id is None:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'invoiceId is required')
    return invoice_id


def _load_live_invoice(store: DocumentStore, org_id: str, invoice_id: str) -> Dict[str, Any]:
    invoice = store.get(invoice_path(org_id, invoice_id))
    if invoice is None or invoice.get('deletedAt'):
        raise HandlerError(ErrorCode.NOT_FOUND, 'Invoice not found')
    return invoice


def _invoice_summary(invoice: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'invoiceId': invoice.get('invoiceId'),
        'orgId': invoice.get('orgId'),
        'caseId': invoice.get('caseId'),
        'status': invoice.get('status'),
        'invoiceNumber': invoice.get('invoiceNumber'),
        'currency': invoice.get('currency'),
        'subtotalCents': invoice.get('subtotalCents'),
        'paidCents': invoice.get('paidCents'),
        'totalCents': invoice.get('totalCents'),
        'issuedAt': to_iso(invoice.get('issuedAt')),
        'dueAt': to_iso(invoice.get('dueAt')),
        'note': invoice.get('note'),
        'lineItemCount': invoice.get('lineItemCount'),
    }


def _is_billable(entry: Dict[str, Any], case_id: str, from_date, to_date) -> bool:
    if entry.get('deletedAt') or entry.get('caseId') != case_id:
        return False
    if entry.get('billable') is not True or entry.get('status') != 'stopped' or not entry.get('endAt'):
        return False
    duration = entry.get('durationSeconds')
    if not isinstance(duration, (int, float)) or duration <= 0:
        return False
    if entry.get('invoiceId') is not None or entry.get('invoicedAt') is not None:
        return False
    start_at = entry.get('startAt')
    if from_date and (start_at is None or start_at < from_date):
        return False
    if to_date and (start_at is None or start_at > to_date):
        return False
    return True


def _load_candidate_entries(store: DocumentStore, org_id: str, case_id: str, data: Dict[str, Any]) -> List[Dict[str, Any]]:
    time_entry_ids = data.get('timeEntryIds')
    if isinstance(time_entry_ids, list) and time_entry_ids:
        ids = []
        for raw in time_entry_ids:
            value = raw.strip() if isinstance(raw, str) else ''
            if value and len(value) <= 120 and value not in ids:
                ids.append(value)
        if not ids:
            raise HandlerError(ErrorCode.VALIDATION_ERROR, 'Invalid timeEntryIds')
        if len(ids) > MAX_ENTRIES_PER_INVOICE:
            raise HandlerError(ErrorCode.VALIDATION_ERROR, 'Too many time entries selected (max 200)')
        entries = []
        for entry_id in ids:
            entry = store.get(doc_path(time_entries_collection(org_id), entry_id))
            if entry is not None:
                entries.append({**entry, 'timeEntryId': entry.get('timeEntryId', entry_id)})
        return entries

    docs = store.query(
        time_entries_collection(org_id),
        filters=[('deletedAt', '==', None), ('caseId', '==', case_id)],
        order_by='startAt',
        descending=True,
        limit=500,
    )
    return [{**doc.data, 'timeEntryId': doc.data.get('timeEntryId', doc.id)} for doc in docs]


@callable_handler("invoiceCreate")
def create_invoice(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Bill a case's stopped, billable, unbilled time entries.

    The invoice, its line items and the billed markers on the time entries are
    written in one batch, so an entry is never billed without its invoice.
    """
    org_id = require_org_id(data)
    case_id = parse_non_empty_string(data.get('caseId'), 120)
    if case_id is None:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'Case ID is required')

    _require_billing(store, caller, org_id)
    _require_case_access(store, org_id, case_id, caller.uid)

    rate_cents = parse_int_in_range(data.get('rateCents'), 1, 10_000_000)
    if rate_cents is None:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'rateCents is required (positive integer)')

    currency = normalize_currency(data.get('currency'))
    if currency is None:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'currency must be a 3-letter code (e.g. USD)')

    raw_from, raw_to = data.get('from'), data.get('to')
    from_date = parse_iso_datetime(raw_from) if raw_from else None
    to_date = parse_iso_datetime(raw_to) if raw_to else None
    if (raw_from and from_date is None) or (raw_to and to_date is None):
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'from/to must be valid ISO timestamps')
    if from_date and to_date and to_date < from_date:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'to must be after from')

    raw_due_at = data.get('dueAt')
    due_at = parse_iso_datetime(raw_due_at) if raw_due_at else None
    if raw_due_at and due_at is None:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'dueAt must be a valid ISO timestamp')

    note = _parse_note(data)

    entries = [
        entry for entry in _load_candidate_entries(store, org_id, case_id, data)
        if _is_billable(entry, case_id, from_date, to_date)
    ]
    if not entries:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'No unbilled billable time entries found for the selected range.')
    if len(entries) > MAX_ENTRIES_PER_INVOICE:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'Too many unbilled entries in range (max 200). Narrow the range.')

    now = utcnow()
    invoice_id = store.new_id(invoices_collection(org_id))
    line_items_collection = doc_path(invoice_path(org_id, invoice_id), COLLECTION_LINE_ITEMS)
    invoice_number = f"INV-{now.strftime('%Y-%m-%d')}-{invoice_id[:6].upper()}"

    case_data = store.get(doc_path(COLLECTION_ORGANIZATIONS, org_id, COLLECTION_CASES, case_id)) or {}
    case_title = (case_data.get('title') or '').strip() or 'Case'

    line_items = []
    for entry in entries:
        description = (entry.get('description') or '').strip() or 'Time entry'
        line_items.append({
            'lineItemId': store.new_id(line_items_collection),
            'orgId': org_id,
            'invoiceId': invoice_id,
            'description': description,
            'timeEntryId': entry['timeEntryId'],
            'startAt': entry.get('startAt'),
            'endAt': entry.get('endAt'),
            'durationSeconds': entry['durationSeconds'],
            'rateCents': rate_cents,
            'amountCents': compute_amount_cents(entry['durationSeconds'], rate_cents),
            'createdAt': now,
            'createdBy': caller.uid,
        })
    subtotal_cents = sum(item['amountCents'] for item in line_items)

    invoice = {
        'invoiceId': invoice_id,
        'orgId': org_id,
        'caseId': case_id,
        'clientId': case_data.get('clientId'),
        'status': STATUS_DRAFT,
        'invoiceNumber': invoice_number,
        'currency': currency,
        'subtotalCents': subtotal_cents,
        'paidCents': 0,
        'totalCents': subtotal_cents,
        'issuedAt': now,
        'dueAt': due_at,
        'note': note,
        'lineItemCount': len(line_items),
        'createdAt': now,
        'updatedAt': now,
        'createdBy': caller.uid,
        'updatedBy': caller.uid,
        'deletedAt': None,
    }

    batch = store.batch()
    batch.set(invoice_path(org_id, invoice_id), invoice)
    for item in line_items:
        batch.set(doc_path(line_items_collection, item['lineItemId']), item)
    for entry in entries:
        batch.update(doc_path(time_entries_collection(org_id), entry['timeEntryId']), {
            'invoiceId': invoice_id,
            'invoicedAt': now,
            'updatedAt': now,
            'updatedBy': caller.uid,
        })
    batch.commit()
    logger.info(f"Invoice {invoice_number} created for case {case_id} with {len(line_items)} line items")

    record_audit_event(store, org_id, caller.uid, 'invoice.created', 'invoice', invoice_id, metadata={
        'caseId': case_id,
        'caseTitle': case_title,
        'invoiceNumber': invoice_number,
        'lineItemCount': len(line_items),
        'subtotalCents': subtotal_cents,
        'currency': currency,
    })
    emit_domain_event_with_outbox(
        store, org_id, 'invoice.created', 'invoice', invoice_id, user_actor(caller.uid),
        payload={'caseId': case_id, 'invoiceNumber': invoice_number, 'subtotalCents': subtotal_cents,
                 'currency': currency},
        matter_id=case_id,
    )
    return {'invoice': _invoice_summary(invoice)}


@callable_handler("invoiceList")
def list_invoices(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    org_id = require_org_id(data)
    _require_billing(store, caller, org_id)

    raw_case_id = data.get('caseId')
    case_id = parse_optional_string(raw_case_id, 120)
    if raw_case_id is not None and case_id is None:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'Invalid caseId')
    if case_id:
        _require_case_access(store, org_id, case_id, caller.uid)

    status = data.get('status')
    if status is not None and status not in INVOICE_STATUSES:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'Invalid status')
    limit, offset = clamp_pagination(data)

    docs = store.query(invoices_collection(org_id), order_by='issuedAt', descending=True, limit=500)
    invoices = [doc.data for doc in docs if not doc.data.get('deletedAt')]
    if case_id:
        invoices = [inv for inv in invoices if inv.get('caseId') == case_id]
    if status:
        invoices = [inv for inv in invoices if inv.get('status') == status]

    access_cache: Dict[str, bool] = {}
    visible = []
    for inv in invoices:
        inv_case_id = inv.get('caseId')
        if inv_case_id not in access_cache:
            access_cache[inv_case_id] = can_user_access_case(store, org_id, inv_case_id, caller.uid).allowed
        if access_cache[inv_case_id]:
            visible.append(inv)

    total = len(visible)
    return {
        'invoices': [_invoice_summary(inv) for inv in visible[offset:offset + limit]],
        'total': total,
        'hasMore': offset + limit < total,
    }


@callable_handler("invoiceGet")
def get_invoice(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    org_id = require_org_id(data)
    invoice_id = _require_invoice_id(data)
    _require_billing(store, caller, org_id)

    invoice = _load_live_invoice(store, org_id, invoice_id)
    _require_case_access(store, org_id, invoice['caseId'], caller.uid)

    path = invoice_path(org_id, invoice_id)
    items = store.query(doc_path(path, COLLECTION_LINE_ITEMS), order_by='createdAt', limit=500)
    payments = store.query(doc_path(path, COLLECTION_PAYMENTS), order_by='paidAt', limit=500)

    response = _invoice_summary(invoice)
    response.update({
        'createdAt': to_iso(invoice.get('createdAt')),
        'updatedAt': to_iso(invoice.get('updatedAt')),
        'createdBy': invoice.get('createdBy'),
        'updatedBy': invoice.get('updatedBy'),
        'lineItems': [
            {
                'lineItemId': item.data.get('lineItemId'),
                'description': item.data.get('description'),
                'timeEntryId': item.data.get('timeEntryId'),
                'startAt': to_iso(item.data.get('startAt')),
                'endAt': to_iso(item.data.get('endAt')),
                'durationSeconds': item.data.get('durationSeconds'),
                'rateCents': item.data.get('rateCents'),
                'amountCents': item.data.get('amountCents'),
            }
            for item in items
        ],
        'payments': [
            {
                'paymentId': payment.data.get('paymentId'),
                'amountCents': payment.data.get('amountCents'),
                'paidAt': to_iso(payment.data.get('paidAt')),
                'note': payment.data.get('note'),
                'createdAt': to_iso(payment.data.get('createdAt')),
                'createdBy': payment.data.get('createdBy'),
            }
            for payment in payments
        ],
    })
    return {'invoice': response}


@callable_handler("invoiceUpdate")
def update_invoice(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    org_id = require_org_id(data)
    invoice_id = _require_invoice_id(data)
    _require_billing(store, caller, org_id)

    invoice = _load_live_invoice(store, org_id, invoice_id)
    _require_case_access(store, org_id, invoice['caseId'], caller.uid)

    changes: Dict[str, Any] = {}
    if 'status' in data and data['status'] is not None:
        status = data['status']
        if status not in UPDATABLE_STATUSES:
            raise HandlerError(ErrorCode.VALIDATION_ERROR, 'Invalid status. Use draft/sent/void.')
        if invoice.get('status') == STATUS_PAID:
            raise HandlerError(ErrorCode.VALIDATION_ERROR, 'Paid invoices cannot be changed to another status.')
        changes['status'] = status

    if 'dueAt' in data:
        if data['dueAt'] is None:
            changes['dueAt'] = None
        else:
            due_at = parse_iso_datetime(data['dueAt'])
            if due_at is None:
                raise HandlerError(ErrorCode.VALIDATION_ERROR, 'Invalid dueAt')
            changes['dueAt'] = due_at

    if 'note' in data:
        changes['note'] = _parse_note(data)

    updated_fields = sorted(changes)
    changes['updatedAt'] = utcnow()
    changes['updatedBy'] = caller.uid
    store.update(invoice_path(org_id, invoice_id), changes)

    record_audit_event(store, org_id, caller.uid, 'invoice.updated', 'invoice', invoice_id,
                       metadata={'updatedFields': updated_fields})

    if changes.get('status') == STATUS_SENT and invoice.get('status') != STATUS_SENT:
        emit_domain_event_with_outbox(
            store, org_id, 'invoice.sent', 'invoice', invoice_id, user_actor(caller.uid),
            payload={'invoiceNumber': invoice.get('invoiceNumber'), 'caseId': invoice.get('caseId')},
            matter_id=invoice.get('caseId'),
        )

    updated = {**invoice, **changes}
    response = _invoice_summary(updated)
    response['updatedAt'] = to_iso(updated['updatedAt'])
    response['updatedBy'] = updated['updatedBy']
    return {'invoice': response}


@callable_handler("invoiceRecordPayment")
def record_payment(store: DocumentStore, caller: AuthContext, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Record a payment. The invoice is re-read inside the transaction so
    concurrent payments serialize: paidCents never exceeds totalCents and the
    invoice turns paid exactly once.
    """
    org_id = require_org_id(data)
    invoice_id = _require_invoice_id(data)
    _require_billing(store, caller, org_id)

    amount = parse_int_in_range(data.get('amountCents'), 1, 1_000_000_000)
    if amount is None:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'amountCents must be a positive integer')

    raw_paid_at = data.get('paidAt')
    paid_at = parse_iso_datetime(raw_paid_at) if raw_paid_at else None
    if raw_paid_at and paid_at is None:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'paidAt must be a valid ISO timestamp')
    note = _parse_note(data)

    pre_invoice = _load_live_invoice(store, org_id, invoice_id)
    if pre_invoice.get('status') == STATUS_VOID:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, 'Cannot record payment for a void invoice')
    _require_case_access(store, org_id, pre_invoice['caseId'], caller.uid)

    path = invoice_path(org_id, invoice_id)
    payments_collection = doc_path(path, COLLECTION_PAYMENTS)
    payment_id = store.new_id(payments_collection)
    now = utcnow()

    def _apply_payment(transaction):
        invoice = transaction.get(path)
        if invoice is None or invoice.get('deletedAt'):
            raise HandlerError(ErrorCode.NOT_FOUND, 'Invoice not found')
        if invoice.get('status') == STATUS_VOID:
            raise HandlerError(ErrorCode.VALIDATION_ERROR, 'Cannot record payment for a void invoice')

        total_cents = invoice.get('totalCents', 0)
        next_paid = min(total_cents, max(0, invoice.get('paidCents', 0) + amount))
        if next_paid >= total_cents:
            next_status = STATUS_PAID
        elif invoice.get('status') == STATUS_DRAFT:
            next_status = STATUS_SENT
        else:
            next_status = invoice.get('status')

        transaction.set(doc_path(payments_collection, payment_id), {
            'paymentId': payment_id,
            'orgId': org_id,
            'invoiceId': invoice_id,
            'amountCents': amount,
            'paidAt': paid_at or now,
            'note': note,
            'createdAt': now,
            'createdBy': caller.uid,
        })
        transaction.update(path, {
            'paidCents': next_paid,
            'status': next_status,
            'updatedAt': now,
            'updatedBy': caller.uid,
        })
        return {
            'invoiceId': invoice_id,
            'status': next_status,
            'paidCents': next_paid,
            'totalCents': total_cents,
        }

    result = store.run_transaction(_apply_payment)
    logger.info(f"Payment {payment_id} of {amount} cents recorded on invoice {invoice_id}")

    record_audit_event(store, org_id, caller.uid, 'invoice.payment_recorded', 'invoice', invoice_id,
                       metadata={'amountCents': amount, 'paymentId': payment_id})
    emit_domain_event_with_outbox(
        store, org_id, 'payment.received', 'invoice', invoice_id, user_actor(caller.uid),
        payload={'amountCents': amount, 'paymentId': payment_id},
        matter_id=pre_invoice.get('caseId'),
    )
    return {'payment': {'paymentId': payment_id, 'amountCents': amount}, 'invoice': result}
