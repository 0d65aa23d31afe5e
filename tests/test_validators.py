from __future__ import annotations

from decimal import Decimal

import pytest

from emissor_nfe.services.exceptions import MissingRequiredField, NFeValidationError
from emissor_nfe.utils.validators import (
    is_valid_cnpj,
    is_valid_cpf,
    only_digits,
    parse_decimal,
    require,
    validate_access_key,
    validate_cest,
    validate_cfop,
    validate_city_code,
    validate_cst_pis_cofins,
    validate_document,
    validate_free_text,
    validate_ncm,
    validate_percent,
    validate_protocol,
)
from tests.conftest import ACCESS_KEY, EMITTER_CNPJ, RECIPIENT_CNPJ, RECIPIENT_CPF


class TestDocuments:
    @pytest.mark.parametrize("cnpj", [EMITTER_CNPJ, RECIPIENT_CNPJ])
    def test_valid_cnpj(self, cnpj):
        assert is_valid_cnpj(cnpj)

    @pytest.mark.parametrize("cnpj", ["12345678000199", "11111111111111", "1122233300018", "abc"])
    def test_invalid_cnpj(self, cnpj):
        assert not is_valid_cnpj(cnpj)

    def test_valid_cpf(self):
        assert is_valid_cpf(RECIPIENT_CPF)

    def test_invalid_cpf(self):
        assert not is_valid_cpf("52998224724")
        assert not is_valid_cpf("00000000000")

    def test_validate_document_strips_cnpj_punctuation(self):
        assert validate_document("11.222.333/0001-81") == EMITTER_CNPJ

    def test_validate_document_accepts_both(self):
        assert validate_document("529.982.247-25") == RECIPIENT_CPF
        assert validate_document(RECIPIENT_CNPJ) == RECIPIENT_CNPJ

    def test_validate_document_rejects(self):
        with pytest.raises(NFeValidationError, match="documento inválido"):
            validate_document("123")

    def test_only_digits(self):
        assert only_digits("(41) 3333-4444") == "4133334444"
        assert only_digits(None) == ""


class TestRequire:
    def test_returns_stripped(self):
        assert require("  abc ", "campo") == "abc"

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_missing(self, value):
        with pytest.raises(MissingRequiredField) as exc_info:
            require(value, "emitente.ie")
        assert exc_info.value.field == "emitente.ie"
        assert exc_info.value.kind == "missing_required_field"


class TestParseDecimal:
    def test_parses_string(self):
        assert parse_decimal("10.50", "valor") == Decimal("10.50")

    def test_rejects_garbage(self):
        with pytest.raises(NFeValidationError, match="valor numérico inválido"):
            parse_decimal("dez", "valor")

    def test_rejects_infinity(self):
        with pytest.raises(NFeValidationError):
            parse_decimal("Infinity", "valor")

    def test_rejects_negative(self):
        with pytest.raises(NFeValidationError, match="negativo"):
            parse_decimal("-1", "valor")

    def test_allows_negative_when_asked(self):
        assert parse_decimal("-1", "valor", allow_negative=True) == Decimal("-1")


class TestProductCodes:
    def test_ncm(self):
        assert validate_ncm("84713012") == "84713012"
        with pytest.raises(NFeValidationError):
            validate_ncm("8471301")

    @pytest.mark.parametrize("cfop", ["5102", "6102", "7101", "1202", "2102", "3101"])
    def test_cfop_valid(self, cfop):
        assert validate_cfop(cfop) == cfop

    @pytest.mark.parametrize("cfop", ["4102", "8102", "510", "51022", "51a2"])
    def test_cfop_invalid(self, cfop):
        with pytest.raises(NFeValidationError):
            validate_cfop(cfop)

    def test_cest(self):
        assert validate_cest("2104700") == "2104700"
        with pytest.raises(NFeValidationError):
            validate_cest("210470")

    def test_city_code(self):
        assert validate_city_code("4106902") == "4106902"
        with pytest.raises(NFeValidationError, match="cMun"):
            validate_city_code("41069")

    def test_cst_pis_cofins(self):
        assert validate_cst_pis_cofins("01") == "01"
        with pytest.raises(NFeValidationError):
            validate_cst_pis_cofins("10")


class TestEventFields:
    def test_access_key(self):
        assert validate_access_key(ACCESS_KEY) == ACCESS_KEY
        with pytest.raises(NFeValidationError):
            validate_access_key(ACCESS_KEY[:-1] + "0")

    def test_protocol(self):
        assert validate_protocol("141260000012345") == "141260000012345"
        with pytest.raises(NFeValidationError):
            validate_protocol("1412600000")

    def test_free_text_collapses_whitespace(self):
        assert validate_free_text("  erro   de  digitação ", "Justificativa", 5, 50) == "erro de digitação"

    def test_free_text_too_short(self):
        with pytest.raises(NFeValidationError, match="mínimo de 15"):
            validate_free_text("curto demais", "Justificativa", 15, 255)

    def test_free_text_too_long(self):
        with pytest.raises(NFeValidationError, match="máximo de 255"):
            validate_free_text("x" * 256, "Justificativa", 15, 255)

    def test_percent(self):
        assert validate_percent("18") == Decimal("18")
        with pytest.raises(NFeValidationError):
            validate_percent("100.01")
