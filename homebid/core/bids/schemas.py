import uuid

from pydantic import BaseModel


class ViewerContext(BaseModel):
    model_config = {"frozen": True}


class JobOwner(ViewerContext):
    user_id: uuid.UUID


class Arbiter(ViewerContext):
    user_id: uuid.UUID | None = None


class Bidder(ViewerContext):
    contractor_id: uuid.UUID


class Other(ViewerContext):
    user_id: uuid.UUID | None = None
