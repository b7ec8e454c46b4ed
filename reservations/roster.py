from .errors import NotFoundError


class Roster:
    """Participant ids per session, capped at the session's max_participants."""

    def __init__(self, storage):
        self.storage = storage

    def _session(self, session_id: str) -> dict:
        session = self.storage.sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        return session

    def members(self, session_id: str) -> list[str]:
        return list(self._session(session_id)["participants"])

    def contains(self, session_id: str, member_id: str) -> bool:
        return member_id in self._session(session_id)["participants"]

    def is_full(self, session_id: str) -> bool:
        session = self._session(session_id)
        return len(session["participants"]) >= session["max_participants"]

    def add(self, session_id: str, member_id: str) -> bool:
        session = self._session(session_id)
        if member_id in session["participants"] or self.is_full(session_id):
            return False
        session["participants"] = [*session["participants"], member_id]
        return True

    def remove(self, session_id: str, member_id: str) -> None:
        session = self._session(session_id)
        if member_id in session["participants"]:
            session["participants"] = [p for p in session["participants"] if p != member_id]
