"""
Case Catalog - validated case listing and random-case selection

Every record leaving the catalog has passed missing_case_field(); incomplete
records are dropped here and never reach the session core.
"""

import random
from typing import Any, List, Optional, Tuple

from dxsim.config import RANDOM_CASE_ATTEMPTS
from dxsim.core.datashapes import Case, Dataset, missing_case_field
from dxsim.core.error_handler import CaseStoreError
from dxsim.error_logging import case_logger, ErrorCodes


class NoCasesAvailable(Exception):
    """The store holds no cases at all."""


class CaseCatalog:
    def __init__(self, store, max_random_attempts: int = RANDOM_CASE_ATTEMPTS, rng: random.Random = None):
        self.store = store
        self.max_random_attempts = max_random_attempts
        self.rng = rng or random.Random()

    def _accept(self, record: Any, source: str) -> bool:
        missing = missing_case_field(record)
        if missing is None:
            return True
        case_id = record.get('id') if isinstance(record, dict) else None
        case_logger.log_warning(
            ErrorCodes.CASES_INVALID_RECORD,
            f"{source}: case validation failed, missing or empty {missing} for case {case_id or 'unknown'}"
        )
        return False

    def list_cases(self, dataset: Optional[str] = None) -> Tuple[List[Case], int]:
        """
        Validated cases for the library view.

        Returns (cases, rejected_count). Store failures propagate as CaseStoreError.
        """
        records = self.store.fetch_cases(dataset)
        valid = [Case.from_record(r) for r in records if self._accept(r, "list_cases")]
        rejected = len(records) - len(valid)

        if rejected > 0:
            case_logger.log_warning(
                ErrorCodes.CASES_FILTERED,
                f"Filtered out {rejected} invalid case records",
                {"dataset": dataset, "rejected": rejected}
            )
        case_logger.log_info(ErrorCodes.CASES_RETURNED, f"Returning {len(valid)} validated cases")
        return valid, rejected

    def random_case(self) -> Optional[Case]:
        """
        Draw a random valid case.

        Raises NoCasesAvailable for an empty store; returns None when every
        draw landed on an invalid record.
        """
        count = self.store.count_cases()
        if count <= 0:
            case_logger.log_error(ErrorCodes.CASES_EMPTY_STORE, "No cases found in store")
            raise NoCasesAvailable("No cases found")

        for attempt in range(1, self.max_random_attempts + 1):
            offset = self.rng.randrange(count)
            try:
                record = self.store.fetch_case_at(offset)
            except CaseStoreError as e:
                case_logger.log_error(
                    ErrorCodes.CASES_FETCH_FAILED,
                    f"Error fetching random case on attempt {attempt}: {e}"
                )
                continue
            if record is None:
                case_logger.log_warning(
                    ErrorCodes.CASES_INVALID_RECORD,
                    f"No case found at offset {offset} on attempt {attempt}"
                )
                continue
            if self._accept(record, f"random_case attempt {attempt}"):
                case = Case.from_record(record)
                case_logger.log_info(
                    ErrorCodes.CASES_RETURNED,
                    f"Valid random case found on attempt {attempt}: {case.display_title}"
                )
                return case

        case_logger.log_error(
            ErrorCodes.CASES_RANDOM_EXHAUSTED,
            f"Failed to find valid random case after {self.max_random_attempts} attempts"
        )
        return None

    def list_datasets(self) -> List[Dataset]:
        return [Dataset.from_record(r) for r in self.store.fetch_datasets() if isinstance(r, dict)]
