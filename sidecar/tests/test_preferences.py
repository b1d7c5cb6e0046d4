"""Tests for the preferences store module."""

import tempfile
import os
from unittest.mock import patch

import pytest

from storage.database import Database
from api.workshop_models import PreferencesUpdate
from api import preferences
from validation.units import UnitSystem


@pytest.fixture
def mock_db():
    """Create an isolated Database using a temp file."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    try:
        yield Database(db_path=path)
    finally:
        os.unlink(path)


class TestGetPreferences:
    def test_defaults_when_empty(self, mock_db):
        with patch.object(preferences, "get_db", return_value=mock_db):
            p = preferences.get_preferences()
            assert p.unit_system == UnitSystem.METRIC
            assert p.disclaimer_accepted is False

    def test_reads_stored_values(self, mock_db):
        mock_db.set_setting("unit_system", "Imperial")
        mock_db.set_setting("disclaimer_accepted", "true")
        with patch.object(preferences, "get_db", return_value=mock_db):
            p = preferences.get_preferences()
            assert p.unit_system == UnitSystem.IMPERIAL
            assert p.disclaimer_accepted is True

    def test_unknown_unit_system_falls_back_to_metric(self, mock_db):
        mock_db.set_setting("unit_system", "Nautical")
        assert preferences.get_preferences(mock_db).unit_system == UnitSystem.METRIC


class TestUpdatePreferences:
    def test_partial_update(self, mock_db):
        with patch.object(preferences, "get_db", return_value=mock_db):
            p = preferences.update_preferences(PreferencesUpdate(unit_system=UnitSystem.IMPERIAL))
            assert p.unit_system == UnitSystem.IMPERIAL
            assert p.disclaimer_accepted is False
            assert mock_db.get_setting("unit_system") == "Imperial"

    def test_bool_stored_as_text(self, mock_db):
        preferences.update_preferences(PreferencesUpdate(disclaimer_accepted=True), mock_db)
        assert mock_db.get_setting("disclaimer_accepted") == "true"

    def test_unset_fields_untouched(self, mock_db):
        mock_db.set_setting("unit_system", "Imperial")
        preferences.update_preferences(PreferencesUpdate(disclaimer_accepted=True), mock_db)
        assert mock_db.get_setting("unit_system") == "Imperial"

    def test_explicit_none_deletes(self, mock_db):
        mock_db.set_setting("unit_system", "Imperial")
        p = preferences.update_preferences(PreferencesUpdate(unit_system=None), mock_db)
        assert mock_db.get_setting("unit_system") is None
        assert p.unit_system == UnitSystem.METRIC
