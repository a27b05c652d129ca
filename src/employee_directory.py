"""
Employee Directory - read-mostly lookup of employee display names.

Profiles live in one JSON file (EmployeesPath in config.ini):

    {
        "ASP0001": {"employee_id": "ASP0001", "name": "Nguyen Van A",
                    "department": "Kho", "active": true},
        ...
    }

A missing file or an unknown code never blocks scanning: lookup_name falls
back to the code itself.
"""
import json
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from identity import normalize_employee_id
from logger import get_logger

logger = get_logger(__name__)


class EmployeeDirectory:
    """
    Employee code -> profile lookup backed by a JSON file.

    Attributes:
        path (Path): JSON file holding the profiles, None for a purely
                     in-memory directory
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._profiles: Dict[str, Dict] = {}
        self.reload()

    def reload(self) -> int:
        """
        (Re)read the profile file.

        Returns:
            Number of profiles loaded
        """
        self._profiles = {}
        if self.path is None:
            return 0

        if not self.path.exists():
            logger.warning(f"Employee file not found: {self.path}")
            return 0

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading employee file {self.path}: {e}")
            return 0

        # Accept a list of profiles as well as a code -> profile mapping
        records = data.values() if isinstance(data, dict) else data
        for record in records:
            if not isinstance(record, dict):
                continue
            result = normalize_employee_id(record.get('employee_id') or record.get('employeeId'))
            if not result.valid:
                logger.warning(f"Skipping employee record with invalid code: {record}")
                continue
            profile = dict(record)
            profile['employee_id'] = result.id
            self._profiles[result.id] = profile

        logger.info(f"Loaded {len(self._profiles)} employee profiles from {self.path}")
        return len(self._profiles)

    def get_profile(self, employee_id: str) -> Optional[Dict]:
        result = normalize_employee_id(employee_id)
        if not result.valid:
            return None
        return self._profiles.get(result.id)

    def lookup_name(self, employee_id: str) -> str:
        """
        Display name for an employee code; the code itself when unknown.
        """
        profile = self.get_profile(employee_id)
        if profile and profile.get('name'):
            return profile['name']
        result = normalize_employee_id(employee_id)
        return result.id or str(employee_id or '')

    def exists(self, employee_id: str) -> bool:
        return self.get_profile(employee_id) is not None

    def is_active(self, employee_id: str) -> bool:
        profile = self.get_profile(employee_id)
        return bool(profile and profile.get('active', True))

    def list_employees(self, active_only: bool = False) -> List[Dict]:
        """Profiles sorted by name."""
        profiles = [p for p in self._profiles.values() if not active_only or p.get('active', True)]
        return sorted(profiles, key=lambda p: p.get('name', ''))

    def add_employee(self, employee_id: str, name: str, **fields) -> bool:
        """
        Add a profile and save the file.

        Returns:
            True if added, False if the code is invalid or already present
        """
        result = normalize_employee_id(employee_id)
        if not result.valid:
            logger.warning(f"Cannot add employee with invalid code {employee_id!r}")
            return False
        if result.id in self._profiles:
            logger.warning(f"Employee {result.id} already exists")
            return False

        profile = {
            'employee_id': result.id,
            'name': name,
            'active': True,
            'created_at': datetime.now().isoformat(),
        }
        profile.update(fields)
        self._profiles[result.id] = profile
        self.save()
        logger.info(f"Added employee {result.id} ({name})")
        return True

    def remember_badge_name(self, employee_id: str, name_hint: Optional[str]) -> None:
        """Use the name printed in a badge QR for codes with no profile yet."""
        if not name_hint:
            return
        result = normalize_employee_id(employee_id)
        if result.valid and result.id not in self._profiles:
            self._profiles[result.id] = {'employee_id': result.id, 'name': name_hint,
                                         'active': True, 'source': 'badge'}

    def save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            json.dump(self._profiles, f, indent=2, ensure_ascii=False)
