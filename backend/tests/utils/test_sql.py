# backend/tests/utils/test_sql.py
"""
Tests for SQL utility functions.
"""

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from marketsync.services.exceptions import StorageUnavailableError
from marketsync.utils.sql import escape_like_pattern, storage_errors


class TestEscapeLikePattern:
    """Tests for escape_like_pattern function."""

    def test_escape_percent_wildcard(self):
        """Should escape % wildcard."""
        assert escape_like_pattern("test%value") == "test\\%value"

    def test_escape_underscore_wildcard(self):
        """Should escape _ wildcard."""
        assert escape_like_pattern("test_value") == "test\\_value"

    def test_escape_backslash(self):
        """Should escape backslash."""
        assert escape_like_pattern("test\\value") == "test\\\\value"

    def test_no_escape_needed(self):
        assert escape_like_pattern("PETR4") == "PETR4"

    def test_empty_string(self):
        assert escape_like_pattern("") == ""


class TestStorageErrors:
    """Tests for the storage_errors context manager."""

    def test_operational_error_becomes_storage_unavailable(self):
        with pytest.raises(StorageUnavailableError) as exc_info:
            with storage_errors():
                raise OperationalError("SELECT 1", {}, Exception("connection refused"))

        assert exc_info.value.reason == "OperationalError"
        # Driver text never reaches the message
        assert "connection refused" not in exc_info.value.message

    def test_integrity_error_passes_through(self):
        with pytest.raises(IntegrityError):
            with storage_errors():
                raise IntegrityError("INSERT", {}, Exception("unique constraint failed"))

    def test_no_error(self):
        with storage_errors():
            value = 1
        assert value == 1
