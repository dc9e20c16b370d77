from schemaflow.models.column_mapping import ColumnMapping
from schemaflow.models.file_error import FileError
from schemaflow.models.file_row import FileRow
from schemaflow.models.global_schema import GlobalSchema
from schemaflow.models.project import Project
from schemaflow.models.schema_version import SchemaVersion
from schemaflow.models.uploaded_file import UploadedFile

__all__ = [
    "ColumnMapping",
    "FileError",
    "FileRow",
    "GlobalSchema",
    "Project",
    "SchemaVersion",
    "UploadedFile",
]
