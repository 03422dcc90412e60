"""
Employee template store.

Holds the enrolled descriptor sets of every active employee in memory and
refreshes them from the ledger's employee directory, falling back to the
on-disk cache when the directory cannot be reached.
"""

import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import numpy as np

from .errors import LedgerUnavailableError
from .logging_config import get_logger
from .models import Employee, FaceTemplate
from .utils.cache import get_employees_hash, load_cache, save_cache

logger = get_logger(__name__)


def _parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return datetime.now(timezone.utc)


def employee_from_record(record: Dict[str, Any]) -> Employee:
    """
    Build an Employee from a directory record.

    Records without encodings are kept as not registered so the
    face_registered/template invariant holds.
    """
    encodings = record.get('face_encodings') or []
    descriptors = tuple(np.asarray(enc, dtype=np.float32) for enc in encodings)
    registered = bool(record.get('face_registered')) and len(descriptors) > 0

    templates: List[FaceTemplate] = []
    if registered:
        scores = record.get('face_quality_scores') or [1.0] * len(descriptors)
        templates.append(FaceTemplate(
            descriptors=descriptors,
            quality_scores=tuple(float(s) for s in scores[:len(descriptors)]),
            enrolled_at=_parse_timestamp(record.get('face_registration_date')),
        ))

    return Employee(
        id=str(record['id']),
        code=str(record.get('employee_code', '')),
        full_name=record.get('full_name', ''),
        is_active=bool(record.get('is_active', True)),
        face_registered=registered,
        templates=templates,
    )


class TemplateStore:
    """
    Thread-safe in-memory cache of enrolled employees.

    The detection tick reads a stacked descriptor matrix; refreshes and
    enrollment swap the map under the lock and invalidate that matrix.
    """

    def __init__(self, employees: Optional[Iterable[Employee]] = None):
        self._lock = threading.Lock()
        self._employees: Dict[str, Employee] = {}
        self._matrix: Optional[Tuple[np.ndarray, List[str]]] = None
        if employees is not None:
            self.replace_all(employees)

    def __len__(self) -> int:
        with self._lock:
            return len(self._employees)

    def get(self, employee_id: str) -> Optional[Employee]:
        with self._lock:
            return self._employees.get(employee_id)

    def employees(self) -> List[Employee]:
        with self._lock:
            return list(self._employees.values())

    def replace_all(self, employees: Iterable[Employee]) -> None:
        """Atomically replace the whole employee map."""
        new_map = {emp.id: emp for emp in employees if emp.is_active}
        with self._lock:
            self._employees = new_map
            self._matrix = None

    def install_template(self, employee: Employee, template: FaceTemplate) -> Employee:
        """
        Install a freshly enrolled template, replacing any earlier ones.

        Args:
            employee: Employee being enrolled
            template: Complete template (all poses)

        Returns:
            The updated employee record
        """
        updated = Employee(
            id=employee.id,
            code=employee.code,
            full_name=employee.full_name,
            is_active=employee.is_active,
            face_registered=True,
            templates=[template],
        )
        with self._lock:
            self._employees[updated.id] = updated
            self._matrix = None
        return updated

    def descriptor_matrix(self) -> Tuple[np.ndarray, List[str]]:
        """
        Stacked descriptors of every enrolled employee.

        Returns:
            Tuple of (matrix [M, D], owner employee id per row); an empty
            store yields a (0, 0) matrix
        """
        with self._lock:
            if self._matrix is None:
                rows: List[np.ndarray] = []
                owners: List[str] = []
                for emp in self._employees.values():
                    for template in emp.templates:
                        for descriptor in template.descriptors:
                            rows.append(np.asarray(descriptor, dtype=np.float32))
                            owners.append(emp.id)
                matrix = np.stack(rows, axis=0) if rows else np.zeros((0, 0), dtype=np.float32)
                self._matrix = (matrix, owners)
            return self._matrix

    def refresh(self, ledger: Any, cache_file: Optional[str] = None) -> int:
        """
        Reload enrolled employees from the directory.

        Args:
            ledger: Client exposing fetch_enrolled_employees()
            cache_file: Optional template cache path

        Returns:
            Number of employees now in the store
        """
        logger.info('Loading enrolled employees from directory...')
        try:
            records = ledger.fetch_enrolled_employees()
            logger.info(f'Fetched {len(records)} enrolled employees')
            if cache_file:
                current_hash = get_employees_hash(records)
                _, cached_hash = load_cache(cache_file)
                if cached_hash != current_hash:
                    save_cache(records, current_hash, cache_file)
        except LedgerUnavailableError as e:
            logger.warning(f'Directory unreachable ({e}), trying template cache')
            records, _ = load_cache(cache_file) if cache_file else (None, None)
            if records is None:
                logger.warning('No template cache available, keeping current templates')
                return len(self)

        employees = []
        for record in records:
            try:
                employees.append(employee_from_record(record))
            except (KeyError, ValueError, TypeError) as e:
                logger.error(f"Skipping malformed employee record {record.get('id')}: {e}")

        self.replace_all(employees)
        logger.info(f'✅ Template store holds {len(self)} employees')
        return len(self)
