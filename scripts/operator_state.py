"""
Durable session state, keyed by remote session id.

Each save writes a fresh object under ``agent-<session>-state-...``; reads list
the namespace and return the newest one. Nothing is ever deleted; expiring old
objects is left to the bucket's lifecycle rules. Both directions are
best-effort: an unconfigured bucket or a backend failure degrades to a no-op
(save) or an empty result (get), and is only logged.
"""

import json
import logging
import re
import time
import uuid
from typing import Any, Optional

import aioboto3

from operator_models import AgentState

logger = logging.getLogger(__name__)

# what new_key appends after "<namespace>-"
_KEY_SUFFIX = re.compile(r"\d{20}-[0-9a-f]{8}\.json")


class SessionStateStore:
    def __init__(
        self,
        bucket: Optional[str],
        *,
        prefix: str = "",
        region_name: Optional[str] = None,
        session: Optional[Any] = None,
    ):
        self.bucket = bucket
        self.prefix = prefix
        self.region_name = region_name
        self._session = session

    @property
    def is_configured(self) -> bool:
        return bool(self.bucket)

    def _s3_client(self):
        if self._session is None:
            self._session = aioboto3.Session()
        return self._session.client("s3", region_name=self.region_name)

    def namespace(self, session_id: str) -> str:
        return f"{self.prefix}agent-{session_id}-state"

    def new_key(self, session_id: str) -> str:
        # zero-padded ns timestamp keeps keys lexically ordered within a namespace
        return f"{self.namespace(session_id)}-{time.time_ns():020d}-{uuid.uuid4().hex[:8]}.json"

    async def save_state(self, session_id: str, state: AgentState) -> str:
        """Persist ``state``; returns the object key, or "" when nothing was written."""
        if not self.is_configured:
            logger.warning("STATE_BUCKET is not set. State will not be saved.")
            return ""

        key = self.new_key(session_id)
        try:
            async with self._s3_client() as client:
                await client.put_object(
                    Bucket=self.bucket,
                    Key=key,
                    Body=state.to_json().encode("utf-8"),
                    ContentType="application/json",
                )
        except Exception as e:
            logger.error(f"Error saving state for session {session_id}: {e}")
            return ""

        logger.info(f"Saved state for session {session_id} at s3://{self.bucket}/{key}")
        return key

    async def get_state(self, session_id: str) -> Optional[AgentState]:
        """Most recently written state for ``session_id``, or None."""
        if not self.is_configured:
            logger.warning("STATE_BUCKET is not set. State cannot be retrieved.")
            return None

        try:
            async with self._s3_client() as client:
                objects: list[dict] = []
                prefix = f"{self.namespace(session_id)}-"
                async for page in client.get_paginator("list_objects_v2").paginate(
                    Bucket=self.bucket, Prefix=prefix
                ):
                    # ids that extend this one ("abc-state-x") share the prefix
                    objects.extend(
                        obj for obj in page.get("Contents", [])
                        if _KEY_SUFFIX.fullmatch(obj["Key"][len(prefix):])
                    )

                if not objects:
                    return None

                newest = max(objects, key=lambda obj: (obj["LastModified"], obj["Key"]))
                response = await client.get_object(Bucket=self.bucket, Key=newest["Key"])
                body = await response["Body"].read()
        except Exception as e:
            logger.error(f"[get_state] Error retrieving state for session {session_id}: {e}")
            return None

        try:
            return AgentState.model_validate(json.loads(body))
        except Exception as e:
            logger.error(f"[get_state] Stored state for session {session_id} is unreadable: {e}")
            return None
