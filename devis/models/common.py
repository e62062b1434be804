from pydantic import BaseModel, ConfigDict
import uuid

def gen_id() -> str:
    return str(uuid.uuid4())

class DevisModel(BaseModel):
    # tolère d'anciennes clés dans les JSON
    model_config = ConfigDict(extra="ignore")
