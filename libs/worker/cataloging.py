"""
Calendar cataloging worker.

Pulls a user's calendar events and upserts people, meetings and attached
documents into the graph store. Only one cataloging run may be active per
worker; a second caller gets an ``already_running`` status instead of
waiting.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from libs.calendar.google_calendar import GoogleCalendarService, UserTokens, get_calendar_service
from libs.graph.neo4j_client import GraphDatabaseService, get_graph_service

logger = structlog.get_logger(__name__)


class WorkerLease:
    """Single-slot lease. ``try_acquire`` never blocks."""

    def __init__(self):
        self._held = False
        self.holder: Optional[str] = None

    @property
    def busy(self) -> bool:
        return self._held

    def try_acquire(self, holder: Optional[str] = None) -> bool:
        if self._held:
            return False
        self._held = True
        self.holder = holder
        return True

    def release(self) -> None:
        self._held = False
        self.holder = None


@dataclass
class ProcessingStatus:
    in_progress: bool = False
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    total_events: int = 0
    processed_events: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_wire(self) -> Dict[str, Any]:
        data = asdict(self)
        return {
            "inProgress": data["in_progress"],
            "startTime": data["start_time"],
            "endTime": data["end_time"],
            "totalEvents": data["total_events"],
            "processedEvents": data["processed_events"],
            "errors": data["errors"],
        }


class CatalogingWorker:
    """Catalogs calendar data into the meeting graph."""

    def __init__(
        self,
        graph: Optional[GraphDatabaseService] = None,
        calendar: Optional[GoogleCalendarService] = None,
        lease: Optional[WorkerLease] = None,
    ):
        self.graph = graph if graph is not None else get_graph_service()
        self.calendar = calendar if calendar is not None else get_calendar_service()
        self.lease = lease or WorkerLease()
        self.status = ProcessingStatus()

    async def process_calendar_data(
        self,
        user_tokens: UserTokens,
        user: Dict[str, Any],
        options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Catalog the user's calendar.

        Returns ``{"status", "message", "processingStatus"}`` where status is
        ``already_running``, ``completed`` or ``error``. Failures on a single
        event are recorded with its event id and do not stop the run.
        """
        options = options or {}
        if not self.lease.try_acquire(user.get("email")):
            logger.info("Cataloging already running", holder=self.lease.holder, requested_by=user.get("email"))
            return {
                "status": "already_running",
                "message": "Calendar processing is already in progress",
                "processingStatus": self.status.to_wire(),
            }

        try:
            self.status = ProcessingStatus(in_progress=True, start_time=datetime.utcnow().isoformat())
            await self.graph.initialize()

            email = user["email"]
            await self.graph.create_person({
                "id": user.get("id"),
                "email": email,
                "name": user.get("name") or user.get("displayName") or email.split("@")[0],
                "photoUrl": user.get("photoUrl"),
            })

            events = await self.calendar.get_calendar_events(
                user_tokens,
                months_back=options.get("monthsBack"),
                batch_size=options.get("batchSize"),
            )
            self.status.total_events = len(events)

            for event in events:
                try:
                    node = await self.graph.create_meeting(event)
                    await self.process_event_documents(event, node.get("id"))
                    self.status.processed_events += 1
                except Exception as e:
                    logger.error("Event cataloging failed", event_id=event.get("googleEventId"), error=str(e))
                    self.status.errors.append({"eventId": event.get("googleEventId"), "error": str(e)})

            self._finish()
            logger.info(
                "Cataloging completed",
                user=email,
                processed=self.status.processed_events,
                total=self.status.total_events,
                errors=len(self.status.errors),
            )
            return {
                "status": "completed",
                "message": f"Processed {self.status.processed_events} of {self.status.total_events} events",
                "processingStatus": self.status.to_wire(),
            }
        except Exception as e:
            logger.error("Cataloging failed", error=str(e), exc_info=True)
            self.status.errors.append({"error": str(e)})
            self._finish()
            return {
                "status": "error",
                "message": f"Error processing calendar data: {e}",
                "processingStatus": self.status.to_wire(),
            }
        finally:
            self.lease.release()

    async def process_event_documents(self, event: Dict[str, Any], meeting_id: Optional[str]) -> None:
        """Upsert the event's attachments and link them to the meeting."""
        attachments = event.get("attachments") or []
        if not attachments or not meeting_id:
            return

        for document in attachments:
            try:
                await self.graph.create_document(document)
                await self.graph.link_meeting_to_document(meeting_id, document["id"])
            except Exception as e:
                logger.warning(
                    "Document cataloging failed",
                    event_id=event.get("googleEventId"),
                    document_id=document.get("id"),
                    error=str(e),
                )
                self.status.errors.append({
                    "eventId": event.get("googleEventId"),
                    "documentId": document.get("id"),
                    "error": f"Document processing error: {e}",
                })

    def _finish(self) -> None:
        self.status.in_progress = False
        self.status.end_time = datetime.utcnow().isoformat()

    def get_processing_status(self) -> Dict[str, Any]:
        return self.status.to_wire()


_cataloging_worker: Optional[CatalogingWorker] = None


def get_cataloging_worker() -> CatalogingWorker:
    """Get or create the global cataloging worker."""
    global _cataloging_worker
    if _cataloging_worker is None:
        _cataloging_worker = CatalogingWorker()
    return _cataloging_worker
