from pydantic import BaseModel, ConfigDict, Field


class NixCacheInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    store_dir: str = Field("/nix/store", alias="StoreDir")
    priority: int = Field(30, alias="Priority")
    want_mass_query: int = Field(1, alias="WantMassQuery")
