# quorum/pipeline/publish.py
"""
Completion side effect: post a completed run's summary into its thread.

Best-effort. Whatever the thread store raises is turned into a warning
string; the run has already completed and stays that way.
"""
from quorum.errors import SideEffectFailure
from quorum.schemas.thread import Contribution


class ReplyPublisher:
    def __init__(self, thread_store, activity=None):
        self.thread_store = thread_store
        self.activity = activity

    def publish(self, run, author: str) -> str | None:
        """Submit the summary as a top-level reply. Returns a warning on failure, else None."""
        try:
            self._submit(run, author)
        except SideEffectFailure as e:
            return f"Summary not published to thread {run.subject_id}: {e}"
        return None

    def _submit(self, run, author: str) -> None:
        contribution = Contribution(author=author, body=run.summary or "")
        try:
            self.thread_store.append_contribution(run.subject_id, contribution)
            self.thread_store.increment_reply_count(run.subject_id)
        except Exception as e:
            raise SideEffectFailure(str(e)) from e

        if self.activity is not None:
            self.activity.record(actor=author, action="replied", target=f"thread {run.subject_id}")
