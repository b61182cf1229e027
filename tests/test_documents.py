"""Tests for transmission document generation."""

from defusedxml import ElementTree

from navigator.efile.documents import build_federal_document, build_maryland_payload, document_hash
from navigator.models.tax_return import FederalTaxReturn, MarylandTaxReturn


def test_federal_document():
    tax_return = FederalTaxReturn(
        tax_year=2024,
        filing_status="single",
        is_amended_return=False,
        adjusted_gross_income=42000,
        federal_withholding=3100.5,
        form_1040_data={"wages": 42000, "dependents": [{"name": "Sam & Co"}]},
    )

    content, digest = build_federal_document(tax_return)

    root = ElementTree.fromstring(content)
    assert root.findtext("ReturnHeader/TaxYr") == "2024"
    assert root.findtext("ReturnHeader/ReturnTypeCd") == "1040"
    assert root.findtext("ReturnData/IRS1040/AdjustedGrossIncomeAmt") == "42000.00"
    assert root.findtext("ReturnData/IRS1040/WithholdingTaxAmt") == "3100.50"
    assert root.findtext("ReturnData/IRS1040/TotalTaxAmt") == "0.00"
    assert "Sam &amp; Co" in content
    assert digest == document_hash(content)
    assert len(digest) == 64


def test_amended_return_type():
    content, _ = build_federal_document(FederalTaxReturn(tax_year=2023, is_amended_return=True))
    assert "<ReturnTypeCd>1040X</ReturnTypeCd>" in content


def test_maryland_payload():
    tax_return = MarylandTaxReturn(
        id=9,
        tax_year=2024,
        filing_status="single",
        county="MO",
        maryland_resident=True,
        county_tax=1280,
        preparer_name="Pat Preparer",
    )

    payload = build_maryland_payload(tax_return)

    assert payload["return_id"] == 9
    assert payload["county"] == "MO"
    assert payload["county_tax"] == 1280.0
    assert payload["pension_income"] == 0.0
    assert payload["preparer"] == {"name": "Pat Preparer", "ptin": None, "ein": None}
