# Utils package initialization
# Import the export helpers to make them available at package level
from .chunk_processor import process_in_chunks, split_chunks
from .export_file_storage import ExportFileStorage, StoredPayload

# Make these available when importing from utils package
__all__ = [
    "process_in_chunks",
    "split_chunks",
    "ExportFileStorage",
    "StoredPayload",
]
