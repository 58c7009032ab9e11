"""
Unit tests for permit field validators.
"""
import pytest
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.services.field_validators import (
    validate_full_name, validate_curp_rfc, validate_email, validate_make,
    validate_model, validate_color, validate_model_year, validate_vin,
    validate_engine_number, validate_address
)


class TestNameValidation:
    """Tests for full name validation."""

    def test_title_cases(self):
        result = validate_full_name("maría lópez")
        assert result.valid
        assert result.value == "María López"

    def test_requires_two_words(self):
        result = validate_full_name("María")
        assert not result.valid
        assert "last name" in result.error

    def test_rejects_digits(self):
        assert not validate_full_name("Juan 123").valid

    def test_rejects_filler(self):
        assert not validate_full_name("aaaaaa bbbbbb").valid


class TestDocumentValidation:
    """Tests for CURP/RFC and email."""

    def test_curp_normalized(self):
        result = validate_curp_rfc("pegj 850101 hdfrrn09")
        assert result.valid
        assert result.value == "PEGJ850101HDFRRN09"

    @pytest.mark.parametrize("value", ["ABC123", "PEGJ850101HDFRRN09XX", "PEGJ-850101"])
    def test_curp_invalid(self, value):
        assert not validate_curp_rfc(value).valid

    def test_curp_rejects_filler(self):
        result = validate_curp_rfc("AAAAAAAAAA")
        assert not result.valid
        assert "filler" in result.error

    def test_email_lowercased(self):
        assert validate_email("Juan@Correo.COM").value == "juan@correo.com"

    @pytest.mark.parametrize("value", ["juan", "juan@", "juan@correo", "@correo.com"])
    def test_email_invalid(self, value):
        assert not validate_email(value).valid

    def test_email_rejects_filler(self):
        result = validate_email("xxxxxx@correo.com")
        assert not result.valid
        assert "filler" in result.error


class TestVehicleValidation:
    """Tests for make, model, color and year."""

    def test_make_uppercased(self):
        assert validate_make("Nissan").value == "NISSAN"

    def test_make_too_long(self):
        assert not validate_make("X" * 31).valid

    def test_model_allows_symbols(self):
        assert validate_model("F-150 XL/4x4").valid

    def test_color_slash(self):
        assert validate_color("rojo/negro").value == "ROJO Y NEGRO"

    def test_year_bounds(self):
        assert validate_model_year("2020", current_year=2024).valid
        assert validate_model_year("2025", current_year=2024).valid
        assert not validate_model_year("2026", current_year=2024).valid
        assert not validate_model_year("1899", current_year=2024).valid
        assert not validate_model_year("20", current_year=2024).valid


class TestSerialValidation:
    """Tests for VIN and engine numbers."""

    def test_vin_uppercased(self):
        assert validate_vin("3n1cn7ad5zk123456").value == "3N1CN7AD5ZK123456"

    def test_engine_dashes(self):
        assert validate_engine_number("hr16-123456").value == "HR16-123456"

    @pytest.mark.parametrize("value", ["ABC", "AB CD 1234", "ABC_12345", "X" * 26, "AAAAA11"])
    def test_serial_invalid(self, value):
        assert not validate_vin(value).valid


class TestAddressValidation:
    """Tests for addresses."""

    def test_valid(self):
        assert validate_address("Calle 5 de Mayo 10, Puebla").valid

    def test_requires_number(self):
        result = validate_address("Calle sin número, Puebla")
        assert not result.valid
        assert "number" in result.error

    def test_too_short(self):
        assert not validate_address("Calle 1").valid
