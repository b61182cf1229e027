"""Maryland Comptroller iFile client for Form 502 submissions."""

import logging
import random
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from navigator.core.config import settings
from navigator.efile.types import CountyTaxValidation, GatewayError, IFileSubmissionResult, utcnow

logger = logging.getLogger(__name__)

ERROR_CODES: dict[str, str] = {
    "AUTH001": "Invalid Maryland iFile credentials",
    "AUTH002": "Certificate validation failed",
    "AUTH003": "Session expired",
    "VAL001": "Invalid Maryland county code",
    "VAL002": "County tax calculation error",
    "VAL003": "Maryland residency requirement not met",
    "VAL004": "Invalid Maryland tax credit claim",
    "VAL005": "Federal AGI mismatch",
    "VAL006": "Missing required Maryland fields",
    "BUS001": "Poverty level credit exceeds limit",
    "BUS002": "Renter's credit not eligible",
    "BUS003": "Property tax credit calculation error",
    "BUS004": "Maryland EITC calculation error",
    "BUS005": "Non-resident must file Form 502B",
    "BUS006": "Pension subtraction exceeds maximum",
    "CTY001": "Baltimore City special district rate not applied",
    "CTY002": "County piggyback tax calculation error",
    "CTY003": "Invalid county for tax year",
    "CTY004": "County rate exceeds maximum allowed",
    "SYS001": "Maryland iFile system unavailable",
    "SYS002": "Submission timeout",
    "SYS003": "XML schema validation failed",
    "SYS004": "Duplicate submission detected",
}

BASE_URLS = {
    "production": "https://ifile.marylandtaxes.gov/api/v1",
    "test": "https://test-ifile.marylandtaxes.gov/api/v1",
    "mock": "mock://maryland-ifile",
}

PENSION_EXCLUSION_MAX = 35_700
COUNTY_TAX_TOLERANCE = 0.01
TOKEN_TTL = timedelta(hours=1)


@dataclass(frozen=True)
class County:
    code: str
    name: str
    rate: float
    is_special_district: bool = False


COUNTIES: tuple[County, ...] = (
    County("AL", "Allegany", 0.0305),
    County("AA", "Anne Arundel", 0.027),
    County("BC", "Baltimore City", 0.032, is_special_district=True),
    County("BA", "Baltimore County", 0.032),
    County("CA", "Calvert", 0.030),
    County("CE", "Caroline", 0.028),
    County("CR", "Carroll", 0.030),
    County("CC", "Cecil", 0.028),
    County("CH", "Charles", 0.030),
    County("DO", "Dorchester", 0.0262),
    County("FR", "Frederick", 0.0296),
    County("GA", "Garrett", 0.0265),
    County("HA", "Harford", 0.0306),
    County("HO", "Howard", 0.032),
    County("KE", "Kent", 0.032),
    County("MO", "Montgomery", 0.032),
    County("PG", "Prince George's", 0.032),
    County("QA", "Queen Anne's", 0.032),
    County("SM", "St. Mary's", 0.030),
    County("SO", "Somerset", 0.032),
    County("TA", "Talbot", 0.0248),
    County("WA", "Washington", 0.028),
    County("WI", "Wicomico", 0.032),
    County("WO", "Worcester", 0.0125),
)

_COUNTY_LOOKUP: dict[str, County] = {}
for _county in COUNTIES:
    _COUNTY_LOOKUP[_county.code] = _county
    _COUNTY_LOOKUP[_county.name.upper()] = _county


def find_county(value: str | None) -> County | None:
    """Look a jurisdiction up by two-letter code or by name (case-insensitive)."""
    if not value:
        return None
    return _COUNTY_LOOKUP.get(value.strip().upper())


def _error(code: str, field: str | None = None, message: str | None = None) -> GatewayError:
    return GatewayError(code=code, message=message or ERROR_CODES[code], field=field)


class MarylandIFileClient:
    def __init__(self, *, environment: str | None = None, rng: random.Random | None = None):
        self.environment = environment or settings.maryland_ifile_environment
        self.base_url = settings.maryland_ifile_api_base_url or BASE_URLS.get(self.environment, BASE_URLS["mock"])
        self._rng = rng or random.Random()
        self._token: str | None = None
        self._token_expires_at: datetime | None = None

    def _authenticate(self) -> None:
        if self._token and self._token_expires_at and self._token_expires_at > utcnow():
            return
        if self.environment != "mock":
            raise NotImplementedError(f"iFile authentication at {self.base_url} ({self.environment}) is not available yet")
        self._token = f"mock-token-{secrets.token_hex(8)}"
        self._token_expires_at = utcnow() + TOKEN_TTL

    def validate_requirements(self, request: dict[str, Any]) -> list[GatewayError]:
        """Maryland-specific checks iFile rejects a Form 502 for."""
        errors: list[GatewayError] = []
        resident = request.get("maryland_resident", True)

        if not resident and request.get("filing_status") != "married_separate":
            errors.append(_error("VAL003"))
        if find_county(request.get("county")) is None:
            errors.append(_error("VAL001", field="county"))
        if (request.get("pension_income") or 0) > PENSION_EXCLUSION_MAX:
            errors.append(_error("BUS006", field="pension_income"))
        if (request.get("maryland_eitc") or 0) < 0:
            errors.append(_error("BUS004", field="maryland_eitc"))
        if not resident and (request.get("state_of_residence") or "").upper() != "MD":
            errors.append(_error("BUS005"))
        return errors

    async def submit_form502(self, request: dict[str, Any]) -> IFileSubmissionResult:
        """Submit a Form 502 payload (see efile.documents.build_maryland_payload).

        Never raises: gateway-side problems come back as status "error"
        with a SYS code so the queue can decide whether to retry.
        """
        return_id = request.get("return_id")
        try:
            self._authenticate()
        except NotImplementedError as e:
            logger.warning("iFile submit return=%s unavailable: %s", return_id, e)
            return IFileSubmissionResult(status="error", errors=[_error("SYS002", message=str(e))])

        errors = self.validate_requirements(request)
        if errors:
            logger.info("iFile submit return=%s rejected locally: %s", return_id, [e.code for e in errors])
            return IFileSubmissionResult(status="rejected", errors=errors)

        result = self._mock_submission()
        logger.info("iFile submit return=%s status=%s (mock)", return_id, result.status)
        return result

    def _mock_submission(self) -> IFileSubmissionResult:
        roll = self._rng.random()
        if roll < 0.70:
            now = utcnow()
            return IFileSubmissionResult(
                status="accepted",
                submission_id=f"MD-{secrets.token_hex(8)}",
                confirmation_number=f"MCF{int(now.timestamp() * 1000)}",
                timestamp=now,
            )
        if roll < 0.80:
            return IFileSubmissionResult(status="rejected", errors=[_error("CTY002", field="county")])
        if roll < 0.90:
            return IFileSubmissionResult(status="rejected", errors=[_error("VAL006")])
        return IFileSubmissionResult(status="error", errors=[_error("SYS001")])

    async def check_submission_status(self, submission_id: str) -> dict[str, Any]:
        if self.environment != "mock":
            raise NotImplementedError(f"iFile status check for '{self.environment}' is not available yet")
        now = utcnow()
        return {
            "submission_id": submission_id,
            "confirmation_number": f"MCF{int(now.timestamp() * 1000)}",
            "status": "accepted" if self._rng.random() > 0.1 else "rejected",
            "processed_at": now.isoformat(),
        }

    @staticmethod
    def validate_county_tax(county: str | None, taxable_income: float, calculated_tax: float) -> CountyTaxValidation:
        """Compare a return's local tax against the county piggyback rate."""
        match = find_county(county)
        if match is None:
            return CountyTaxValidation(valid=False, calculated_tax=calculated_tax, message=f"Invalid county: {county}")

        expected = round(taxable_income * match.rate, 2)
        difference = round(abs(expected - calculated_tax), 2)
        valid = difference <= COUNTY_TAX_TOLERANCE
        message = (
            "County tax verified"
            if valid
            else f"County tax calculation error. Expected: ${expected:.2f}, Calculated: ${calculated_tax:.2f}"
        )
        return CountyTaxValidation(
            valid=valid,
            county_code=match.code,
            expected_tax=expected,
            calculated_tax=calculated_tax,
            difference=difference,
            message=message,
        )

    @staticmethod
    def get_counties_with_rates() -> list[dict[str, Any]]:
        return [
            {"code": c.code, "name": c.name, "rate": c.rate, "is_special_district": c.is_special_district}
            for c in COUNTIES
        ]


_client: MarylandIFileClient | None = None


def get_ifile_client() -> MarylandIFileClient:
    global _client
    if _client is None:
        _client = MarylandIFileClient()
    return _client
