"""
Lua scripts for atomic Redis document writes.

Each write and its change notification happen in one script so a subscriber
never sees a change event for a write that did not land, or misses one that did.
"""
from typing import Dict, Optional

# Replace a document and publish the change event
SET_DOCUMENT_SCRIPT = """
local doc_key = KEYS[1]
local channel = ARGV[1]
local document = ARGV[2]
local event = ARGV[3]

redis.call('SET', doc_key, document)
redis.call('PUBLISH', channel, event)

return 1
"""

# Delete a document and publish a deletion event if it existed
DELETE_DOCUMENT_SCRIPT = """
local doc_key = KEYS[1]
local channel = ARGV[1]
local event = ARGV[2]

local deleted = redis.call('DEL', doc_key)
if deleted == 1 then
    redis.call('PUBLISH', channel, event)
end

return deleted
"""


class AtomicScripts:
    """Container for Lua scripts"""

    def __init__(self, redis_wrapper):
        """
        Initialize with the RedisDocumentStore wrapper (not a raw client) so
        every script call goes through its retry logic and error handling
        """
        self.redis_wrapper = redis_wrapper
        self._scripts: Dict[str, Optional[str]] = {
            "set_document": SET_DOCUMENT_SCRIPT,
            "delete_document": DELETE_DOCUMENT_SCRIPT,
        }

    async def set_document(self, doc_key: str, channel: str, document: str, event: str):
        """Execute set document script"""
        return await self.redis_wrapper.eval(
            self._scripts["set_document"],
            1,
            doc_key,
            channel,
            document,
            event
        )

    async def delete_document(self, doc_key: str, channel: str, event: str) -> int:
        """Execute delete document script"""
        return await self.redis_wrapper.eval(
            self._scripts["delete_document"],
            1,
            doc_key,
            channel,
            event
        )
