"""Transmission documents for queued returns.

The queue needs a payload and a digest, not a printable form: the stored
return data is wrapped in a small XML envelope and hashed with SHA-256.
"""

import hashlib
import xml.etree.ElementTree as ET
from typing import Any

from navigator.core.config import settings
from navigator.efile.types import utcnow
from navigator.models.tax_return import FederalTaxReturn, MarylandTaxReturn


def _amount(value: float | None) -> str:
    return f"{float(value or 0):.2f}"


def _add_data(parent: ET.Element, data: dict[str, Any]) -> None:
    for key, value in sorted(data.items()):
        child = ET.SubElement(parent, "Field", name=str(key))
        if isinstance(value, dict):
            _add_data(child, value)
        elif isinstance(value, list):
            for item in value:
                entry = ET.SubElement(child, "Item")
                if isinstance(item, dict):
                    _add_data(entry, item)
                else:
                    entry.text = str(item)
        elif value is not None:
            child.text = str(value)


def document_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def build_federal_document(tax_return: FederalTaxReturn) -> tuple[str, str]:
    """Return (xml, sha256) for a federal return."""
    root = ET.Element("Return", returnVersion=str(tax_return.tax_year))

    header = ET.SubElement(root, "ReturnHeader")
    ET.SubElement(header, "ReturnTs").text = utcnow().isoformat()
    ET.SubElement(header, "TaxYr").text = str(tax_return.tax_year)
    ET.SubElement(header, "ReturnTypeCd").text = "1040X" if tax_return.is_amended_return else "1040"
    ET.SubElement(header, "FilingStatusCd").text = tax_return.filing_status or ""
    software = ET.SubElement(header, "SoftwareInfo")
    ET.SubElement(software, "SoftwareId").text = settings.irs_software_id
    ET.SubElement(software, "SoftwareVersionNum").text = settings.irs_software_version

    data = ET.SubElement(root, "ReturnData")
    irs1040 = ET.SubElement(data, "IRS1040")
    ET.SubElement(irs1040, "AdjustedGrossIncomeAmt").text = _amount(tax_return.adjusted_gross_income)
    ET.SubElement(irs1040, "TaxableIncomeAmt").text = _amount(tax_return.taxable_income)
    ET.SubElement(irs1040, "TotalTaxAmt").text = _amount(tax_return.total_tax)
    ET.SubElement(irs1040, "WithholdingTaxAmt").text = _amount(tax_return.federal_withholding)
    ET.SubElement(irs1040, "RefundAmt").text = _amount(tax_return.refund_amount)
    ET.SubElement(irs1040, "OwedAmt").text = _amount(tax_return.amount_owed)
    _add_data(ET.SubElement(irs1040, "FormData"), tax_return.form_1040_data or {})

    content = ET.tostring(root, encoding="unicode", method="xml")
    return content, document_hash(content)


def build_maryland_payload(tax_return: MarylandTaxReturn) -> dict[str, Any]:
    """Form 502 submission request for the iFile client."""
    return {
        "return_id": tax_return.id,
        "tax_year": tax_return.tax_year,
        "filing_status": tax_return.filing_status,
        "county": tax_return.county,
        "maryland_resident": tax_return.maryland_resident,
        "state_of_residence": tax_return.state_of_residence,
        "maryland_taxable_income": float(tax_return.maryland_taxable_income or 0),
        "county_tax": float(tax_return.county_tax or 0),
        "pension_income": float(tax_return.pension_income or 0),
        "maryland_eitc": float(tax_return.maryland_eitc or 0),
        "poverty_level_credit": float(tax_return.poverty_level_credit or 0),
        "property_tax_credit": float(tax_return.property_tax_credit or 0),
        "preparer": {
            "name": tax_return.preparer_name,
            "ptin": tax_return.preparer_ptin,
            "ein": tax_return.preparer_ein,
        },
    }
