"""IRS Modernized e-File (MeF) A2A client.

Live mode speaks SOAP over HTTPS (TransmitReturn / GetAcknowledgment).
Mock mode draws weighted outcomes so the queue can be exercised end to
end without IRS credentials.
"""

import base64
import logging
import random
import secrets
import string
import xml.etree.ElementTree as ET
from datetime import datetime, timedelta

import defusedxml.ElementTree as SafeET
import httpx
from defusedxml import DefusedXmlException

from navigator.core.config import settings
from navigator.efile.circuit_breaker import CircuitBreaker
from navigator.efile.types import (
    AcknowledgmentResult,
    ErrorType,
    Gateway,
    GatewayError,
    TransmissionResult,
    as_utc,
    utcnow,
)

logger = logging.getLogger(__name__)

SOAP_NS = "http://schemas.xmlsoap.org/soap/envelope/"
MEF_NS = "http://www.irs.gov/efile/mef/services"
_NS = {"soap": SOAP_NS, "mef": MEF_NS}

ET.register_namespace("soap", SOAP_NS)
ET.register_namespace("mef", MEF_NS)

SESSION_TOKEN_TTL = timedelta(hours=1)
_ID_ALPHABET = string.ascii_letters + string.digits


class MefTransportError(Exception):
    """The MeF endpoint could not be reached or did not answer in time."""


class MefClient:
    """Client for IRS MeF submission and status services.

    Network failures and server errors count against the circuit breaker;
    any successful transmission resets it.
    """

    def __init__(
        self,
        *,
        mock_mode: bool | None = None,
        endpoint: str | None = None,
        efin: str | None = None,
        timeout: float | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        rng: random.Random | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.mock_mode = settings.irs_mock_mode if mock_mode is None else mock_mode
        self.endpoint = (endpoint or settings.irs_mef_endpoint).rstrip("/")
        self.efin = efin if efin is not None else settings.irs_efin
        self.software_id = settings.irs_software_id
        self.software_version = settings.irs_software_version
        self.timeout = timeout or settings.irs_timeout_seconds
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=settings.irs_circuit_breaker_threshold,
            cooldown_seconds=settings.irs_circuit_breaker_cooldown_seconds,
        )
        self._rng = rng or random.Random()
        self._transport = transport
        self._session_token: str | None = None
        self._token_expires_at: datetime | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def transmit_return(self, return_id: int | str, xml_content: str) -> TransmissionResult:
        """Transmit one return document.

        Raises MefTransportError on network failure so the caller can
        schedule a retry.
        """
        if not self.circuit_breaker.allow_request(Gateway.IRS_MEF):
            return TransmissionResult(
                success=False,
                status_code="CIRCUIT_BREAKER_OPEN",
                message="Service temporarily unavailable due to repeated failures",
                errors=[
                    GatewayError(
                        code="CB_OPEN",
                        message="Circuit breaker is open. Service will retry after cooldown period.",
                    )
                ],
                error_type=ErrorType.CIRCUIT_OPEN,
                is_mock=self.mock_mode,
            )

        try:
            if self.mock_mode:
                result = self._mock_transmit(return_id)
            else:
                result = await self._live_transmit(return_id, xml_content)
        except MefTransportError:
            self.circuit_breaker.record_failure(Gateway.IRS_MEF)
            raise

        if result.success:
            self.circuit_breaker.record_success(Gateway.IRS_MEF)
        elif result.error_type == ErrorType.SERVER:
            self.circuit_breaker.record_failure(Gateway.IRS_MEF)

        logger.info(
            "MeF transmit return=%s success=%s code=%s mock=%s",
            return_id,
            result.success,
            result.status_code,
            self.mock_mode,
        )
        return result

    async def get_acknowledgment(self, transmission_id: str, submission_id: str | None = None) -> AcknowledgmentResult:
        if self.mock_mode:
            return self._mock_acknowledgment(submission_id)
        return await self._live_acknowledgment(transmission_id, submission_id)

    def get_circuit_breaker_status(self) -> dict:
        return self.circuit_breaker.get_state(Gateway.IRS_MEF)

    def reset_circuit_breaker(self) -> None:
        self.circuit_breaker.reset(Gateway.IRS_MEF)

    @property
    def circuit_open(self) -> bool:
        return self.circuit_breaker.is_open(Gateway.IRS_MEF)

    # ------------------------------------------------------------------
    # Live SOAP transport
    # ------------------------------------------------------------------

    def _ensure_session(self) -> str:
        now = utcnow()
        if self._session_token and self._token_expires_at and self._token_expires_at > now:
            return self._session_token
        # TODO: exchange the EFIN + strong-auth certificate for a real MeF session (Login service)
        self._session_token = f"IRS_TOKEN_{secrets.token_urlsafe(16)}"
        self._token_expires_at = now + SESSION_TOKEN_TTL
        return self._session_token

    def _envelope(self) -> tuple[ET.Element, ET.Element]:
        envelope = ET.Element(f"{{{SOAP_NS}}}Envelope")
        header = ET.SubElement(envelope, f"{{{SOAP_NS}}}Header")
        auth = ET.SubElement(header, f"{{{MEF_NS}}}Authentication")
        ET.SubElement(auth, f"{{{MEF_NS}}}EFIN").text = self.efin or "TEST_EFIN"
        ET.SubElement(auth, f"{{{MEF_NS}}}SoftwareId").text = self.software_id
        ET.SubElement(auth, f"{{{MEF_NS}}}SessionToken").text = self._ensure_session()
        body = ET.SubElement(envelope, f"{{{SOAP_NS}}}Body")
        return envelope, body

    def build_transmission_envelope(self, return_id: int | str, xml_content: str) -> str:
        envelope, body = self._envelope()
        transmit = ET.SubElement(body, f"{{{MEF_NS}}}TransmitReturn")
        data = ET.SubElement(transmit, f"{{{MEF_NS}}}ReturnData")
        ET.SubElement(data, f"{{{MEF_NS}}}ElectronicPostmark").text = utcnow().isoformat()
        ET.SubElement(data, f"{{{MEF_NS}}}ReturnId").text = str(return_id)
        ET.SubElement(data, f"{{{MEF_NS}}}XMLContent").text = base64.b64encode(xml_content.encode("utf-8")).decode(
            "ascii"
        )
        return ET.tostring(envelope, encoding="unicode")

    def build_acknowledgment_envelope(self, transmission_id: str, submission_id: str | None) -> str:
        envelope, body = self._envelope()
        request = ET.SubElement(body, f"{{{MEF_NS}}}GetAcknowledgment")
        ET.SubElement(request, f"{{{MEF_NS}}}TransmissionId").text = transmission_id
        if submission_id:
            ET.SubElement(request, f"{{{MEF_NS}}}SubmissionId").text = submission_id
        return ET.tostring(envelope, encoding="unicode")

    async def _post(self, path: str, action: str, payload: str) -> httpx.Response:
        headers = {
            "Content-Type": "text/xml; charset=utf-8",
            "SOAPAction": f'"{action}"',
            "Authorization": f"Bearer {self._ensure_session()}",
            "User-Agent": f"{self.software_id}/{self.software_version}",
        }
        try:
            async with httpx.AsyncClient(base_url=self.endpoint, timeout=self.timeout, transport=self._transport) as client:
                return await client.post(path, content=payload.encode("utf-8"), headers=headers)
        except httpx.HTTPError as e:
            logger.error("MeF %s request failed: %s", action, e)
            raise MefTransportError(f"{action} failed: {e}") from e

    async def _live_transmit(self, return_id: int | str, xml_content: str) -> TransmissionResult:
        envelope = self.build_transmission_envelope(return_id, xml_content)
        resp = await self._post("/SubmissionServices", "TransmitReturn", envelope)
        result = self.parse_transmission_response(resp.text)
        if resp.status_code >= 500 and not result.success and result.error_type != ErrorType.SERVER:
            result.error_type = ErrorType.SERVER
        return result

    async def _live_acknowledgment(self, transmission_id: str, submission_id: str | None) -> AcknowledgmentResult:
        envelope = self.build_acknowledgment_envelope(transmission_id, submission_id)
        resp = await self._post("/StatusServices", "GetAcknowledgment", envelope)
        return self.parse_acknowledgment_response(resp.text)

    @staticmethod
    def _body(xml_text: str) -> ET.Element | None:
        try:
            root = SafeET.fromstring(xml_text)
        except (ET.ParseError, DefusedXmlException):
            return None
        return root.find("soap:Body", _NS)

    @classmethod
    def parse_transmission_response(cls, xml_text: str) -> TransmissionResult:
        body = cls._body(xml_text)
        if body is None:
            return TransmissionResult(
                success=False,
                status_code="PARSE_ERROR",
                message="Unable to parse response",
                error_type=ErrorType.SERVER,
            )

        response = body.find("mef:TransmitReturnResponse", _NS)
        if response is not None:
            return TransmissionResult(
                success=True,
                transmission_id=response.findtext("mef:TransmissionId", namespaces=_NS),
                submission_id=response.findtext("mef:SubmissionId", namespaces=_NS),
                status_code=response.findtext("mef:StatusCode", default="", namespaces=_NS),
                message=response.findtext("mef:StatusMessage", default="", namespaces=_NS),
            )

        fault = body.find("soap:Fault", _NS)
        if fault is not None:
            code = fault.findtext("faultcode") or "SOAP_FAULT"
            message = fault.findtext("faultstring") or "SOAP fault occurred"
            error_type = ErrorType.SERVER if code.endswith("Server") else ErrorType.BUSINESS_RULE
            return TransmissionResult(
                success=False,
                status_code=code,
                message=message,
                errors=[GatewayError(code=code, message=message)],
                error_type=error_type,
            )

        return TransmissionResult(
            success=False,
            status_code="PARSE_ERROR",
            message="Unexpected response body",
            error_type=ErrorType.UNKNOWN,
        )

    @classmethod
    def parse_acknowledgment_response(cls, xml_text: str) -> AcknowledgmentResult:
        body = cls._body(xml_text)
        response = body.find("mef:GetAcknowledgmentResponse", _NS) if body is not None else None
        if response is None:
            return AcknowledgmentResult(status="error", rejection_reason="Unable to parse acknowledgment response")

        status = (response.findtext("mef:Status", default="", namespaces=_NS) or "").lower()
        submission_id = response.findtext("mef:SubmissionId", namespaces=_NS)

        if status == "accepted":
            accepted_raw = response.findtext("mef:AcceptedTimestamp", namespaces=_NS)
            accepted_at = as_utc(datetime.fromisoformat(accepted_raw)) if accepted_raw else utcnow()
            return AcknowledgmentResult(
                status="accepted",
                submission_id=submission_id,
                dcn=response.findtext("mef:DCN", namespaces=_NS),
                accepted_at=accepted_at,
            )

        if status == "rejected":
            errors = [
                GatewayError(
                    code=err.findtext("mef:RuleNumber", default="", namespaces=_NS),
                    message=err.findtext("mef:Message", default="", namespaces=_NS),
                    field=err.findtext("mef:XPath", namespaces=_NS),
                )
                for err in response.findall("mef:Errors/mef:Error", _NS)
            ]
            return AcknowledgmentResult(
                status="rejected",
                submission_id=submission_id,
                rejection_code=response.findtext("mef:RejectionCode", namespaces=_NS),
                rejection_reason=response.findtext("mef:RejectionReason", namespaces=_NS),
                errors=errors,
            )

        return AcknowledgmentResult(status="pending", submission_id=submission_id)

    # ------------------------------------------------------------------
    # Mock scenarios
    # ------------------------------------------------------------------

    def _mock_id(self, prefix: str = "") -> str:
        return prefix + "".join(self._rng.choices(_ID_ALPHABET, k=10))

    def _mock_transmit(self, return_id: int | str) -> TransmissionResult:
        roll = self._rng.random()

        if roll < 0.70:
            return TransmissionResult(
                success=True,
                transmission_id=self._mock_id("MOCK_TRANS_"),
                submission_id=self._mock_id("MOCK_SUB_"),
                status_code="0000",
                message="Return successfully transmitted",
                is_mock=True,
            )
        if roll < 0.80:
            return TransmissionResult(
                success=False,
                status_code="BR001",
                message="Business rule validation failed",
                errors=[
                    GatewayError(code="BR001", message="Dependent SSN is invalid or missing", field="DependentSSN"),
                    GatewayError(
                        code="BR002",
                        message="Filing status incompatible with spouse information",
                        field="FilingStatus",
                    ),
                ],
                error_type=ErrorType.BUSINESS_RULE,
                is_mock=True,
            )
        if roll < 0.85:
            return TransmissionResult(
                success=False,
                status_code="SCHEMA_001",
                message="XML schema validation failed",
                errors=[
                    GatewayError(code="XSD001", message='Element "TaxpayerSSN" does not match pattern', field="TaxpayerSSN")
                ],
                error_type=ErrorType.SCHEMA,
                is_mock=True,
            )
        if roll < 0.90:
            raise MefTransportError("Network timeout (simulated)")

        return TransmissionResult(
            success=False,
            status_code="5000",
            message="Internal server error",
            errors=[GatewayError(code="SERVER_ERROR", message="The IRS system is temporarily unavailable")],
            error_type=ErrorType.SERVER,
            is_mock=True,
        )

    def _mock_acknowledgment(self, submission_id: str | None) -> AcknowledgmentResult:
        roll = self._rng.random()
        now = utcnow()

        if roll < 0.70:
            return AcknowledgmentResult(
                status="accepted",
                submission_id=submission_id,
                dcn=f"{now.year}{self._mock_id().upper()}",
                accepted_at=now,
                is_mock=True,
            )
        if roll < 0.85:
            return AcknowledgmentResult(
                status="rejected",
                submission_id=submission_id,
                rejection_code="IND-180",
                rejection_reason="The primary SSN has been locked due to identity theft concerns",
                errors=[GatewayError(code="IND-180", message="Primary taxpayer SSN is locked. File Form 14039")],
                is_mock=True,
            )
        if roll < 0.95:
            return AcknowledgmentResult(
                status="rejected",
                submission_id=submission_id,
                rejection_code="MATH-001",
                rejection_reason="Mathematical errors detected in return",
                errors=[
                    GatewayError(
                        code="MATH-001",
                        message="Line 16 (Total Tax) does not equal sum of lines 12-15",
                        field="/Return/ReturnData/IRS1040/TotalTax",
                    )
                ],
                is_mock=True,
            )
        return AcknowledgmentResult(status="pending", submission_id=submission_id, is_mock=True)


_client: MefClient | None = None


def get_mef_client() -> MefClient:
    """Process-wide client so the circuit breaker state is shared."""
    global _client
    if _client is None:
        _client = MefClient()
    return _client
