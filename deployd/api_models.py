"""
Pydantic models for the webhook API.
Only the fields of the GitHub push event the pipeline reads are declared;
everything else in the payload is ignored.
"""

from pydantic import BaseModel, ConfigDict, Field


# --- Push event ---

class User(BaseModel):
    login: str

class Repository(BaseModel):
    name: str
    full_name: str
    owner: User
    url: str

class PushEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    reference: str = Field(alias="ref")
    before: str
    after: str
    repository: Repository
    sender: User
    deleted: bool = False


# --- Health ---

class HealthResponse(BaseModel):
    status: str
    queued: int
    workers: int
    locks: int
