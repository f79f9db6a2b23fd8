"""Tagged Data Format - Tag-annotated format strings

This package provides the tagged data format: a `category/subcategory` base
format with `#`-delimited plain and dynamic tags, plus the validation rules
used to check one format against another.
"""

from .tagged_data_format import (
    TaggedDataFormat,
    TaggedDataFormatBuilder,
    TaggedDataFormatRecord,
    TaggedDataFormatError,
    UnsupportedSourceError,
    InvalidValidatorError,
    ValidationStage,
)

__version__ = "0.1.0"

__all__ = [
    "TaggedDataFormat",
    "TaggedDataFormatBuilder",
    "TaggedDataFormatRecord",
    "TaggedDataFormatError",
    "UnsupportedSourceError",
    "InvalidValidatorError",
    "ValidationStage",
]
