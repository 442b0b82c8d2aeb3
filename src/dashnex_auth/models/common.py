from pydantic import BaseModel


class BasePydanticModel(BaseModel):
    model_config = {
        "extra": "forbid",
        "populate_by_name": True,
        "use_enum_values": True,
    }

class ServerPayloadModel(BasePydanticModel):
    """Base for models parsed from DashNex responses; tolerates fields we do not model."""
    model_config = {
        "extra": "ignore",
        "populate_by_name": True,
        "use_enum_values": True,
    }
