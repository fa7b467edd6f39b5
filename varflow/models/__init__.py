from varflow.models.models import RunConfig, SampleRecord

__all__ = ["RunConfig", "SampleRecord"]
