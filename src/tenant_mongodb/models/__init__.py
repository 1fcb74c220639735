"""Schema descriptors and record accessors."""

from tenant_mongodb.models.descriptor import IndexSpec, ModelDescriptor, collection_name_for

__all__ = ["IndexSpec", "ModelDescriptor", "collection_name_for"]
