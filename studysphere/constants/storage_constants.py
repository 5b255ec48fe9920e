"""Key names used in the local key-value store."""

PASSAGE_CACHE_KEY: str = "studysphere.passage-cache.v1"
DRAFT_KEY: str = "studysphere.draft.v1"
COLLECTION_KEY_TEMPLATE: str = "studysphere.{collection}.v1"
ROLE_CACHE_KEY_TEMPLATE: str = "userRole:{uid}"
LOCAL_ACCOUNTS_KEY: str = "studysphere.accounts.v1"
LOCAL_SESSION_KEY: str = "studysphere.session.v1"

PASSAGES_COLLECTION: str = "passages"
ATTEMPTS_COLLECTION: str = "attempts"
PROFILES_COLLECTION: str = "profiles"
