"""
Reference Resolver

Looks up the pre-uploaded reference document (the full case PDF) for a case
and decides whether it can still be served. The batch ingestion job that
uploads documents lives elsewhere; this side only reads.

Handles expire on the engine's side after 48 hours, so anything at or past
REFERENCE_FRESHNESS_HOURS is reported as absent.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from dxsim.config import REFERENCE_FRESHNESS_HOURS
from dxsim.core.datashapes import ReferenceHandle, case_number_from_doi, utcnow
from dxsim.core.error_handler import ErrorHandler, ErrorCategory, ErrorSeverity
from dxsim.error_logging import reference_logger, ErrorCodes


def parse_timestamp(value) -> Optional[datetime]:
    """Parse a store timestamp into an aware UTC datetime. Naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class ReferenceResolver:
    """
    case id -> ReferenceHandle, or None on miss / expiry / lookup failure.
    Never raises to the caller.
    """

    def __init__(self, store,
                 freshness_window: timedelta = timedelta(hours=REFERENCE_FRESHNESS_HOURS),
                 clock: Callable[[], datetime] = utcnow,
                 error_handler: Optional[ErrorHandler] = None):
        self.store = store
        self.freshness_window = freshness_window
        self.clock = clock
        self.error_handler = error_handler or ErrorHandler()

    def resolve(self, case_id: str, doi: Optional[str] = None) -> Optional[ReferenceHandle]:
        case_number = case_number_from_doi(doi) or case_id

        try:
            record = self.store.fetch_reference_record(case_id)
        except Exception as e:
            self.error_handler.handle_error(
                e, ErrorCategory.REFERENCE_RESOLUTION, ErrorSeverity.HIGH_DEGRADE,
                context={"case_id": case_id, "doi": doi},
                operation="fetch_reference_record"
            )
            reference_logger.log_error(
                ErrorCodes.REF_LOOKUP_FAILED,
                f"Error fetching cached reference document for case {case_number}: {e}"
            )
            return None

        uri = (record or {}).get('gemini_file_uri')
        if not uri:
            reference_logger.log_warning(
                ErrorCodes.REF_MISS,
                f"No cached reference document found for case {case_number}. Run the batch upload job first."
            )
            return None

        uploaded_at = parse_timestamp(record.get('gemini_file_uploaded_at'))
        if uploaded_at is None:
            reference_logger.log_warning(
                ErrorCodes.REF_BAD_TIMESTAMP,
                f"Cached reference document for case {case_number} has no usable upload time",
                {"uploaded_at": record.get('gemini_file_uploaded_at')}
            )
            return None

        handle = ReferenceHandle(
            case_id=case_id,
            uri=uri,
            uploaded_at=uploaded_at,
            name=f"nejm-case-{case_number}.pdf"
        )

        if not self.is_fresh(handle):
            reference_logger.log_warning(
                ErrorCodes.REF_EXPIRED,
                f"Cached reference document for case {case_number} has expired. Re-run batch upload.",
                {"uploaded_at": uploaded_at.isoformat()}
            )
            return None

        reference_logger.log_info(ErrorCodes.REF_HIT, f"Using cached reference document for case {case_number}: {uri}")
        return handle

    def is_fresh(self, handle: ReferenceHandle) -> bool:
        return handle.is_fresh(self.clock(), self.freshness_window)
