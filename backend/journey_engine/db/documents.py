from beanie import Document
from pymongo import ASCENDING, DESCENDING, IndexModel

from journey_engine.models.execution import JourneyExecution
from journey_engine.models.journal import JourneyJournalEntry
from journey_engine.models.journey import Journey, JourneyStep
from journey_engine.models.lead_journey import LeadJourney


class JourneyDocument(Document, Journey):
    class Settings:
        name = "journeys"
        indexes = [
            IndexModel([("journey_id", ASCENDING)], unique=True),
            IndexModel([("tenant_id", ASCENDING), ("is_active", ASCENDING)]),
        ]


class JourneyStepDocument(Document, JourneyStep):
    class Settings:
        name = "journey_steps"
        indexes = [
            IndexModel([("step_id", ASCENDING)], unique=True),
            IndexModel([("journey_id", ASCENDING), ("step_order", ASCENDING)], unique=True),
        ]


class LeadJourneyDocument(Document, LeadJourney):
    class Settings:
        name = "lead_journeys"
        indexes = [
            IndexModel([("lead_journey_id", ASCENDING)], unique=True),
            IndexModel([("journey_id", ASCENDING)]),
            IndexModel([("tenant_id", ASCENDING), ("status", ASCENDING)]),
            IndexModel([("lead_id", ASCENDING), ("tenant_id", ASCENDING)]),
            # At most one active enrollment per (lead, journey).
            IndexModel(
                [("lead_id", ASCENDING), ("journey_id", ASCENDING)],
                unique=True,
                partialFilterExpression={"status": "active"},
                name="one_active_enrollment",
            ),
        ]


class JourneyExecutionDocument(Document, JourneyExecution):
    class Settings:
        name = "journey_executions"
        indexes = [
            IndexModel([("execution_id", ASCENDING)], unique=True),
            IndexModel([("status", ASCENDING), ("scheduled_time", ASCENDING)]),
            IndexModel([("lead_journey_id", ASCENDING)]),
            IndexModel([("step_id", ASCENDING)]),
            IndexModel([("tenant_id", ASCENDING), ("status", ASCENDING), ("scheduled_time", ASCENDING)]),
        ]


class JourneyJournalDocument(Document, JourneyJournalEntry):
    """
    Represents a single event or state transition in a lead's journey.
    Used for auditing and debugging enrollments.
    """

    class Settings:
        name = "journey_journal"
        indexes = [
            IndexModel([("lead_journey_id", ASCENDING), ("timestamp", DESCENDING)]),
            IndexModel([("journey_id", ASCENDING)]),
        ]


DOCUMENT_MODELS = [
    JourneyDocument,
    JourneyStepDocument,
    LeadJourneyDocument,
    JourneyExecutionDocument,
    JourneyJournalDocument,
]
