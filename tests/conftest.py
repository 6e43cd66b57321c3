"""Shared fixtures: a small SQLite + FTS5 regulations database."""

import sqlite3
from pathlib import Path

import pytest
import pytest_asyncio

from euregs.database.sqlite_adapter import SqliteAdapter
from euregs.services.regulations import RegulationsService

SCHEMA_PATH = Path(__file__).resolve().parent.parent / "euregs" / "database" / "schema_sqlite.sql"

SAMPLE_DATA = """
INSERT INTO regulations (id, full_name, celex_id, effective_date) VALUES
  ('GDPR', 'General Data Protection Regulation', '32016R0679', '2018-05-25'),
  ('NIS2', 'Network and Information Security Directive 2', '32022L2555', '2024-10-17'),
  ('DORA', 'Digital Operational Resilience Act', '32022R2554', '2025-01-17');

INSERT INTO articles (regulation, article_number, title, text, chapter, recitals) VALUES
  ('GDPR', '1', 'Subject-matter and objectives', 'This Regulation lays down rules relating to the protection of natural persons with regard to the processing of personal data and rules relating to the free movement of personal data.', 'I', '["1"]'),
  ('GDPR', '4', 'Definitions', '''personal data'' means any information relating to an identified or identifiable natural person (''data subject''); an identifiable natural person is one who can be identified, directly or indirectly, in particular by reference to an identifier such as a name, an identification number, location data or an online identifier.', 'I', NULL),
  ('GDPR', '5', 'Principles relating to processing of personal data', 'Personal data shall be processed lawfully, fairly and in a transparent manner in relation to the data subject. Personal data shall be collected for specified, explicit and legitimate purposes.', 'II', NULL),
  ('GDPR', '6', 'Lawfulness of processing', 'Processing shall be lawful only if and to the extent that at least one of the following applies: the data subject has given consent, processing is necessary for the performance of a contract, processing is necessary for compliance with a legal obligation.', 'II', NULL),
  ('GDPR', '17', 'Right to erasure (''right to be forgotten'')', 'The data subject shall have the right to obtain from the controller the erasure of personal data concerning him or her without undue delay and the controller shall have the obligation to erase personal data without undue delay.', 'III', NULL),
  ('GDPR', '32', 'Security of processing', 'The controller and the processor shall implement appropriate technical and organisational measures to ensure a level of security appropriate to the risk, including encryption of personal data, the ability to ensure ongoing confidentiality, integrity, availability and resilience of processing systems.', 'IV', '["83"]'),
  ('GDPR', '33', 'Notification of a personal data breach', 'In the case of a personal data breach, the controller shall without undue delay and, where feasible, not later than 72 hours after having become aware of it, notify the personal data breach to the supervisory authority.', 'IV', NULL);

INSERT INTO articles (regulation, article_number, title, text, chapter) VALUES
  ('NIS2', '1', 'Subject matter', 'This Directive lays down measures with a view to achieving a high common level of cybersecurity across the Union. This Directive establishes cybersecurity risk-management measures and reporting obligations for essential and important entities.', 'I'),
  ('NIS2', '21', 'Cybersecurity risk-management measures', 'Member States shall ensure that essential and important entities take appropriate and proportionate technical, operational and organisational measures to manage the risks posed to the security of network and information systems.', 'IV'),
  ('NIS2', '23', 'Reporting obligations', 'Member States shall ensure that essential and important entities notify, without undue delay, the CSIRT or competent authority of any incident that has a significant impact on the provision of their services. An early warning shall be submitted within 24 hours. An incident notification shall be submitted within 72 hours.', 'IV'),
  ('NIS2', '24', 'Use of European cybersecurity certification schemes', 'Member States may require essential and important entities to use particular ICT products, ICT services and ICT processes that are certified under European cybersecurity certification schemes.', 'IV'),
  ('DORA', '1', 'Subject matter', 'This Regulation lays down uniform requirements concerning the security of network and information systems supporting the business processes of financial entities.', 'I'),
  ('DORA', '17', 'ICT-related incident management process', 'Financial entities shall define, establish and implement an ICT-related incident management process to detect, manage and notify ICT-related incidents. Financial entities shall record all ICT-related incidents and significant cyber threats.', 'III'),
  ('DORA', '19', 'Reporting of major ICT-related incidents', 'Financial entities shall report major ICT-related incidents to the relevant competent authority. The initial notification shall be made without undue delay and in any event within 4 hours from the moment the financial entity classifies the incident as major.', 'III'),
  ('DORA', '28', 'General principles', 'Financial entities shall manage ICT third-party risk as an integral component of ICT risk within their ICT risk management framework. Financial entities shall adopt and regularly review a strategy on ICT third-party risk.', 'V');

INSERT INTO recitals (regulation, recital_number, text, related_articles) VALUES
  ('GDPR', 1, 'The protection of natural persons in relation to the processing of personal data is a fundamental right. Article 8(1) of the Charter of Fundamental Rights of the European Union provides that everyone has the right to the protection of personal data concerning him or her.', '["1", "2"]'),
  ('GDPR', 83, 'In order to maintain security and to prevent processing in infringement of this Regulation, the controller or processor should evaluate the risks inherent in the processing and implement measures to mitigate those risks, such as encryption.', '["32"]'),
  ('NIS2', 1, 'The achievement of a high common level of cybersecurity across the Union is necessary to improve the functioning of the internal market and to protect individuals against cyber threats.', '["1"]'),
  ('DORA', 1, 'Digital operational resilience is essential to ensure that financial entities can withstand, respond to and recover from all types of ICT-related disruptions and threats.', '["1"]');

INSERT INTO definitions (regulation, term, definition, article) VALUES
  ('GDPR', 'personal data', 'any information relating to an identified or identifiable natural person', '4'),
  ('GDPR', 'processing', 'any operation performed on personal data, such as collection, recording, organisation, storage, adaptation, retrieval, consultation, use, disclosure, erasure or destruction', '4'),
  ('NIS2', 'incident', 'an event compromising the availability, authenticity, integrity or confidentiality of stored, transmitted or processed data', '6'),
  ('DORA', 'ICT-related incident', 'a single event or a series of linked events unplanned by the financial entity that compromises the security of the network and information systems', '3');

INSERT INTO control_mappings (framework, control_id, control_name, regulation, articles, coverage, notes) VALUES
  ('ISO27001', 'A.5.1', 'Policies for information security', 'GDPR', '["24", "32"]', 'partial', 'GDPR requires appropriate technical and organisational measures'),
  ('ISO27001', 'A.5.1', 'Policies for information security', 'NIS2', '["21"]', 'full', 'NIS2 explicitly requires security policies'),
  ('ISO27001', 'A.5.1', 'Policies for information security', 'DORA', '["9", "10"]', 'full', 'DORA Chapter II covers ICT risk management framework'),
  ('ISO27001', 'A.6.8', 'Information security event reporting', 'GDPR', '["33", "34"]', 'full', 'Data breach notification requirements'),
  ('ISO27001', 'A.6.8', 'Information security event reporting', 'NIS2', '["23"]', 'full', 'Incident reporting to CSIRT'),
  ('ISO27001', 'A.6.8', 'Information security event reporting', 'DORA', '["17", "19"]', 'full', 'ICT incident reporting requirements'),
  ('NIST_CSF', 'GV.PO-01', 'Cybersecurity policy', 'GDPR', '["24", "32"]', 'partial', 'GDPR requires appropriate policies'),
  ('NIST_CSF', 'GV.PO-01', 'Cybersecurity policy', 'NIS2', '["21"]', 'full', 'NIS2 explicitly requires security policies'),
  ('NIST_CSF', 'RS.MA-01', 'Incident response plan is executed', 'GDPR', '["33", "34"]', 'full', 'Breach notification requirements'),
  ('NIST_CSF', 'RS.MA-01', 'Incident response plan is executed', 'NIS2', '["23"]', 'full', 'Incident reporting to CSIRT');

INSERT INTO applicability_rules (regulation, sector, subsector, applies, confidence, basis_article, notes) VALUES
  ('GDPR', 'financial', NULL, 1, 'definite', '2', 'Applies to all sectors processing personal data'),
  ('GDPR', 'healthcare', NULL, 1, 'definite', '2', 'Applies to all sectors processing personal data'),
  ('GDPR', 'manufacturing', NULL, 1, 'definite', '2', 'Applies to all sectors processing personal data'),
  ('NIS2', 'financial', 'bank', 1, 'definite', '2', 'Banks are essential entities'),
  ('NIS2', 'energy', NULL, 1, 'definite', '2', 'Energy sector is essential'),
  ('NIS2', 'healthcare', NULL, 1, 'definite', '2', 'Healthcare providers are essential entities'),
  ('NIS2', 'digital_infrastructure', NULL, 1, 'definite', '2', 'DNS, TLD, cloud providers are essential'),
  ('NIS2', 'manufacturing', NULL, 0, 'possible', '3', 'Only listed manufacturers are important entities'),
  ('DORA', 'financial', NULL, 1, 'likely', '2', 'Most financial entities are in scope'),
  ('DORA', 'financial', 'bank', 1, 'definite', '2', 'Credit institutions in scope'),
  ('DORA', 'financial', 'insurance', 1, 'definite', '2', 'Insurance undertakings in scope'),
  ('DORA', 'financial', 'investment', 1, 'definite', '2', 'Investment firms in scope');

INSERT INTO source_registry (regulation, celex_id, eur_lex_version, last_fetched, articles_expected, articles_parsed, quality_status) VALUES
  ('GDPR', '32016R0679', '2016-05-04', '2026-02-14T06:00:00Z', 7, 7, 'complete'),
  ('NIS2', '32022L2555', '2022-12-27', '2026-02-14T06:00:00Z', 4, 4, 'complete'),
  ('DORA', '32022R2554', '2022-12-27', '2026-02-14T06:00:00Z', 4, 4, 'complete');

INSERT INTO evidence_requirements (regulation, article, requirement_summary, evidence_type, artifact_name, description, auditor_questions) VALUES
  ('GDPR', '32', 'Security of processing', 'policy', 'Information Security Policy', 'Document describing technical and organisational measures', '["Is encryption applied at rest?", "Who approves the policy?"]'),
  ('GDPR', '33', 'Breach notification process', 'procedure', 'Breach Notification Procedure', 'Process for notifying supervisory authority within 72 hours', NULL),
  ('DORA', '17', 'Incident management', 'procedure', 'ICT Incident Management Process', 'Documented process for detecting, managing and notifying ICT incidents', NULL);
"""


def build_database(path: Path, extra_sql: str = "") -> Path:
    """Create a regulations database file with the sample data."""
    conn = sqlite3.connect(path)
    try:
        conn.executescript(SCHEMA_PATH.read_text())
        conn.executescript(SAMPLE_DATA)
        if extra_sql:
            conn.executescript(extra_sql)
        conn.commit()
    finally:
        conn.close()
    return path


@pytest.fixture
def db_path(tmp_path):
    return build_database(tmp_path / "regulations.db")


@pytest_asyncio.fixture
async def adapter(db_path):
    sqlite_adapter = SqliteAdapter(str(db_path))
    await sqlite_adapter.connect()
    yield sqlite_adapter
    await sqlite_adapter.close()


@pytest.fixture
def service(adapter):
    return RegulationsService(adapter)
