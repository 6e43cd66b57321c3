from enum import Enum
from typing import List, Optional
from pydantic import BaseModel


class Framework(str, Enum):
    ISO27001 = "ISO27001"
    NIST_CSF = "NIST_CSF"


class Sector(str, Enum):
    FINANCIAL = "financial"
    HEALTHCARE = "healthcare"
    ENERGY = "energy"
    TRANSPORT = "transport"
    DIGITAL_INFRASTRUCTURE = "digital_infrastructure"
    PUBLIC_ADMINISTRATION = "public_administration"
    MANUFACTURING = "manufacturing"
    OTHER = "other"


class EvidenceType(str, Enum):
    DOCUMENT = "document"
    LOG = "log"
    TEST_RESULT = "test_result"
    CERTIFICATION = "certification"
    POLICY = "policy"
    PROCEDURE = "procedure"


class FrameworkInfo(BaseModel):
    id: Framework
    name: str
    version: str
    aliases: List[str]
    description: str


FRAMEWORKS: List[FrameworkInfo] = [
    FrameworkInfo(
        id=Framework.ISO27001,
        name="ISO/IEC 27001",
        version="2022",
        aliases=["ISO27001", "ISO 27001", "ISO-27001", "ISO27001:2022"],
        description="Information security management systems. Annex A controls are grouped into organisational (A.5), people (A.6), physical (A.7) and technological (A.8) themes.",
    ),
    FrameworkInfo(
        id=Framework.NIST_CSF,
        name="NIST Cybersecurity Framework",
        version="2.0",
        aliases=["NIST_CSF", "NIST CSF", "NIST-CSF", "CSF"],
        description="Cybersecurity outcomes organised under the Govern, Identify, Protect, Detect, Respond and Recover functions.",
    ),
]


def _normalise(value: str) -> str:
    return "".join(ch for ch in value.upper() if ch.isalnum())


def get_framework(value: str) -> Optional[FrameworkInfo]:
    key = _normalise(value)
    for f in FRAMEWORKS:
        if any(_normalise(alias) == key for alias in f.aliases):
            return f
    return None


def parse_sector(value: str) -> Optional[Sector]:
    try:
        return Sector(value.strip().lower())
    except ValueError:
        return None


def parse_evidence_type(value: str) -> Optional[EvidenceType]:
    try:
        return EvidenceType(value.strip().lower())
    except ValueError:
        return None


VALID_FRAMEWORKS = [f.id.value for f in FRAMEWORKS]
VALID_SECTORS = [s.value for s in Sector]
VALID_EVIDENCE_TYPES = [e.value for e in EvidenceType]
