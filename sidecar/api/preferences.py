"""
Persistent user preferences backed by the SQLite settings table.

Same public API as before: get_preferences, update_preferences.
"""

from __future__ import annotations

from api.workshop_models import Preferences, PreferencesUpdate
from storage.database import Database, get_db
from validation.units import UnitSystem

# Keys stored in the settings table
_DB_KEYS = ("unit_system", "disclaimer_accepted")


def get_preferences(db: Database | None = None) -> Preferences:
    """Return current preferences (loaded fresh from SQLite)."""
    db = db or get_db()
    all_db = db.get_all_settings()

    return Preferences(
        unit_system=UnitSystem.from_stored(all_db.get("unit_system")),
        disclaimer_accepted=all_db.get("disclaimer_accepted", "false") == "true",
    )


def update_preferences(update: PreferencesUpdate, db: Database | None = None) -> Preferences:
    """Apply partial update and return new preferences."""
    db = db or get_db()

    update_data = update.model_dump(exclude_unset=True)

    for key in _DB_KEYS:
        if key in update_data:
            val = update_data[key]
            if val is None:
                db.delete_setting(key)
            elif isinstance(val, bool):
                db.set_setting(key, "true" if val else "false")
            else:
                # Enums -> store their value string
                db.set_setting(key, val.value if hasattr(val, "value") else str(val))

    return get_preferences(db)
