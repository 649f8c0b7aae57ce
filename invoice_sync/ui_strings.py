from __future__ import annotations

from typing import Dict, List


QUEUE_STATUS_GROUP: List[Dict[str, str]] = [
    {
        "key": "pending",
        "label": "Pending",
        "description": "Invoice is queued and waiting for the next posting cycle.",
    },
    {
        "key": "processing",
        "label": "Processing",
        "description": "Invoice is being posted to the ERP right now.",
    },
    {
        "key": "completed",
        "label": "Posted",
        "description": "Invoice was accepted by the ERP.",
    },
    {
        "key": "failed",
        "label": "Retrying",
        "description": "Posting failed temporarily and will be retried automatically.",
    },
    {
        "key": "requires_review",
        "label": "Needs review",
        "description": "Posting stopped and needs manual action before it can continue.",
    },
]


FISCALIZATION_STATUS_GROUP: List[Dict[str, str]] = [
    {"key": "not_required", "label": "Not required", "description": "No fiscal receipt is needed."},
    {"key": "pending", "label": "Pending", "description": "Fiscal receipt not issued yet."},
    {"key": "succeeded", "label": "Fiscalized", "description": "Fiscal receipt issued by the device."},
    {
        "key": "failed",
        "label": "Fiscalization failed",
        "description": "Invoice is posted but the fiscal device did not issue a receipt.",
    },
]


MESSAGES: Dict[str, Dict[str, str]] = {
    "success": {
        "invoice_queued": "Invoice queued for posting.",
        "invoice_already_queued": "Invoice was already queued.",
        "retry_scheduled": "Invoice will be retried in the next cycle.",
        "fiscalization_succeeded": "Fiscal receipt issued.",
        "stock_valid": "Stock is available for all lines.",
    },
    "error": {
        "action_invalid": "Invalid action for this operation.",
        "action_not_allowed_for_status": "This action is not allowed for the current status.",
        "duplicate_document": "The ERP already has a document with this reference.",
        "erp_rejected": "The ERP rejected the invoice. Review the data before resubmitting.",
        "erp_temporarily_unavailable": "The ERP is unavailable right now. Posting will be retried automatically.",
        "external_reference_required": "External reference is required.",
        "customer_code_required": "Customer code is required.",
        "fiscalization_failed": "The fiscal device did not issue a receipt.",
        "fiscalization_not_applicable": "Fiscalization is not applicable to this invoice.",
        "insufficient_stock": "Insufficient stock for one or more lines.",
        "invalid_status_transition": "Invalid queue status transition.",
        "lines_required": "At least one invoice line is required.",
        "line_number_duplicate": "Each invoice line needs its own line number.",
        "negative_stock": "Operation would drive stock below zero.",
        "not_found": "Record not found.",
        "quantity_invalid": "Quantity must be a finite number greater than zero.",
        "queue_entry_not_found": "Queue entry not found.",
        "reservation_invalid": "Stock reservation is not valid for posting.",
        "reservation_not_found": "Stock reservation not found.",
        "stock_record_not_found": "No stock record for this item and warehouse.",
        "status_invalid": "Status is invalid for this step.",
        "unexpected_error": "The operation could not be completed. Try again shortly.",
    },
}


def _labels(group: List[Dict[str, str]]) -> Dict[str, str]:
    return {item["key"]: item["label"] for item in group}


QUEUE_STATUS_LABELS = _labels(QUEUE_STATUS_GROUP)
FISCALIZATION_STATUS_LABELS = _labels(FISCALIZATION_STATUS_GROUP)


def get_message(category: str, key: str, default: str | None = None) -> str:
    message = MESSAGES.get(category, {}).get(key)
    if message:
        return message
    if default is not None:
        return default
    return key


def error_message(key: str, default: str | None = None) -> str:
    return get_message("error", key, default)


def success_message(key: str, default: str | None = None) -> str:
    return get_message("success", key, default)


def queue_status_label(status: str | None) -> str:
    return QUEUE_STATUS_LABELS.get(str(status or "").strip().lower(), str(status or ""))


def fiscalization_status_label(status: str | None) -> str:
    return FISCALIZATION_STATUS_LABELS.get(str(status or "").strip().lower(), str(status or ""))
