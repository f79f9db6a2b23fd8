"""Tagged Data Format

This module provides the tagged data format (TDF): a `category/subcategory`
base format followed by `#`-delimited tags, e.g. `example/example#tag#key:arg`.
Tags containing `:` are dynamic tags carrying a single argument. The format
lets structured metadata travel through transports that only carry strings.
"""

import logging
from collections.abc import Mapping
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set, TypedDict, Union

logger = logging.getLogger(__name__)

TAG_SEPARATOR = "#"
DYNAMIC_SEPARATOR = ":"
FORMAT_SEPARATOR = "/"
DEFAULT_FORMAT = "/"

Validator = Callable[[str], bool]


# Error classes
class TaggedDataFormatError(Exception):
    """Base exception for tagged data format errors"""
    pass


class UnsupportedSourceError(TaggedDataFormatError, TypeError):
    """Source, base or candidate is not a string, record or TaggedDataFormat"""
    def __init__(self, role: str, value: object):
        self.role = role
        self.value = value
        super().__init__(f"Unsupported {role} for tagged data format: {type(value).__name__}")


class InvalidValidatorError(TaggedDataFormatError, TypeError):
    """Validator predicate is not callable"""
    pass


class TaggedDataFormatRecord(TypedDict):
    """Plain record form of a tagged data format"""
    format: str
    tags: List[str]
    dynamic_tags: List[str]


class ValidationStage(Enum):
    """Validation stages, in the order they are evaluated"""
    FORMAT = 1
    EXCLUDED = 2
    REQUIRED = 3
    DYNAMIC = 4


def _is_dynamic(tag: str) -> bool:
    return DYNAMIC_SEPARATOR in tag


def _tag_name(tag: str) -> str:
    """Name part of a tag (everything before the first colon)"""
    return tag.partition(DYNAMIC_SEPARATOR)[0]


def _dynamic_prefix(tag: str) -> str:
    """Prefix of a dynamic tag, including the colon"""
    return _tag_name(tag) + DYNAMIC_SEPARATOR


def _find_dynamic(dynamic_tags: Iterable[str], prefix: str) -> Optional[str]:
    # Sorted so that "first match" is stable across runs
    for tag in sorted(dynamic_tags):
        if tag.startswith(prefix):
            return tag
    return None


class TaggedDataFormat:
    """A tagged data format with tag sets and validation rules

    Examples:
    - `example/example`
    - `data/format#a#b`
    - `data/format#a#size:10`

    Construction dispatches on `(source, base)`:
    - no source: an empty format, or a copy of `base` including its rules
    - string: parsed; with a base, tags are merged and rules come from the base
    - TaggedDataFormat: tags copied; with a base, tags and rules are merged
    - record: tags copied (merged with the base's tags); rules start empty

    Every collection is copied, so a derived instance never shares state
    with its source or base.
    """

    def __init__(
        self,
        source: Union[str, "TaggedDataFormat", Mapping, None] = None,
        base: Optional["TaggedDataFormat"] = None,
    ):
        if base is not None and not isinstance(base, TaggedDataFormat):
            raise UnsupportedSourceError("base", base)

        self._format: str = DEFAULT_FORMAT
        self._tags: Set[str] = set()
        self._dynamic_tags: Set[str] = set()
        self._required_format: Optional[str] = None
        self._required_tags: Set[str] = set()
        self._excluded_tags: Set[str] = set()
        self._validators: Dict[str, Validator] = {}

        if source is None:
            if base is not None:
                self._format = base._format
                self._ingest(base._tags, base._dynamic_tags)
                self._adopt_rules(base)
            return

        if isinstance(source, str):
            record = self.parse_string(source)
            self._format = record["format"]
            if base is not None:
                self._ingest(base._tags, base._dynamic_tags)
                self._adopt_rules(base)
            self._ingest(record["tags"], record["dynamic_tags"])
            return

        if isinstance(source, TaggedDataFormat):
            self._format = source._format
            self._ingest(source._tags, source._dynamic_tags)
            if base is not None:
                self._ingest(base._tags, base._dynamic_tags)
                self._adopt_rules(base)
                # Source rules are merged on top of the base's
                self._required_tags |= source._required_tags
                self._excluded_tags |= source._excluded_tags
                self._validators.update(source._validators)
                if source._required_format is not None:
                    self._required_format = source._required_format
            return

        if isinstance(source, Mapping):
            self._format = source.get("format", DEFAULT_FORMAT)
            if base is not None:
                self._ingest(base._tags, base._dynamic_tags)
            dynamic_tags = source.get("dynamic_tags", source.get("dynamicTags", ()))
            self._ingest(source.get("tags", ()), dynamic_tags)
            return

        raise UnsupportedSourceError("source", source)

    def _ingest(self, tags: Iterable[str], dynamic_tags: Iterable[str]) -> None:
        """Add tags, sorting each into the plain or dynamic set by its content"""
        for tag in tags:
            self.add_tag(tag)
        for tag in dynamic_tags:
            self.add_tag(tag)

    def _adopt_rules(self, other: "TaggedDataFormat") -> None:
        self._required_format = other._required_format
        self._required_tags = set(other._required_tags)
        self._excluded_tags = set(other._excluded_tags)
        self._validators = dict(other._validators)

    @classmethod
    def from_string(cls, s: str) -> "TaggedDataFormat":
        """Create a tagged data format from its string form"""
        return cls(s)

    # Codec

    @staticmethod
    def parse_string(s: str) -> TaggedDataFormatRecord:
        """Parse a string into the record form of a tagged data format

        The first `#` fragment is the base format, taken verbatim. Remaining
        fragments containing `:` are dynamic tags, the rest are plain tags.
        Empty fragments are dropped. Parsing never fails.
        """
        fragments = s.split(TAG_SEPARATOR)
        base_format = fragments[0]

        if FORMAT_SEPARATOR not in base_format:
            logger.debug("Base format %r has no '%s'", base_format, FORMAT_SEPARATOR)

        tags: List[str] = []
        dynamic_tags: List[str] = []
        for fragment in fragments[1:]:
            if not fragment:
                continue
            if _is_dynamic(fragment):
                dynamic_tags.append(fragment)
            else:
                tags.append(fragment)

        return {"format": base_format, "tags": tags, "dynamic_tags": dynamic_tags}

    @staticmethod
    def record_to_string(record: Mapping) -> str:
        """Serialize a record into its string form

        Plain tags come first, then dynamic tags, each in the order given.
        Any `#` inside a tag is stripped and a single `#` is inserted before
        each tag.
        """
        out = record.get("format", DEFAULT_FORMAT)
        dynamic_tags = record.get("dynamic_tags", record.get("dynamicTags", ()))
        for tag in list(record.get("tags", ())) + list(dynamic_tags):
            out += TAG_SEPARATOR + tag.replace(TAG_SEPARATOR, "")
        return out

    @staticmethod
    def canonical(tdf: str) -> str:
        """Get the canonical form of a tagged data format string"""
        return TaggedDataFormat(tdf).to_string()

    def to_record(self) -> TaggedDataFormatRecord:
        """Record form with tags sorted alphabetically"""
        return {
            "format": self._format,
            "tags": sorted(self._tags),
            "dynamic_tags": sorted(self._dynamic_tags),
        }

    def to_string(self) -> str:
        """Get the canonical string representation of this tagged data format"""
        return self.record_to_string(self.to_record())

    def __str__(self) -> str:
        return self.to_string()

    def __repr__(self) -> str:
        return f"TaggedDataFormat('{self.to_string()}')"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TaggedDataFormat):
            return False
        return (
            self._format == other._format
            and self._tags == other._tags
            and self._dynamic_tags == other._dynamic_tags
        )

    # Accessors

    @property
    def format(self) -> str:
        """The `category/subcategory` part"""
        return self._format

    @format.setter
    def format(self, value: str) -> None:
        self._format = value

    @property
    def tags(self) -> List[str]:
        return sorted(self._tags)

    @property
    def dynamic_tags(self) -> List[str]:
        return sorted(self._dynamic_tags)

    @property
    def required_tags(self) -> List[str]:
        return sorted(self._required_tags)

    @property
    def excluded_tags(self) -> List[str]:
        return sorted(self._excluded_tags)

    @property
    def required_dynamic_tags(self) -> List[str]:
        """Dynamic tag prefixes that have a validator registered"""
        return sorted(self._validators)

    @property
    def required_format(self) -> Optional[str]:
        """Format a candidate must have to pass validation; None accepts any"""
        return self._required_format

    @required_format.setter
    def required_format(self, value: Optional[str]) -> None:
        self._required_format = value

    # Tag operations

    def add_tag(self, tag: str) -> None:
        """Add a tag

        Tags containing `:` go into the dynamic tags verbatim, so adding
        `size:1` then `size:2` keeps both. Use `update_dynamic_tag` to
        replace by prefix.
        """
        if _is_dynamic(tag):
            self._dynamic_tags.add(tag)
        else:
            self._tags.add(tag)

    def remove_tag(self, tag: str) -> None:
        """Remove a tag

        A tag containing `:` removes the first dynamic tag starting with it,
        so `"size:"` removes any `size` dynamic tag.
        """
        if _is_dynamic(tag):
            found = _find_dynamic(self._dynamic_tags, tag)
            if found is not None:
                self._dynamic_tags.discard(found)
        self._tags.discard(tag)

    def update_dynamic_tag(self, tag: str) -> None:
        """Set a dynamic tag, replacing any existing one with the same prefix"""
        if not _is_dynamic(tag):
            logger.debug("Ignoring update of %r: not a dynamic tag", tag)
            return

        prefix = _dynamic_prefix(tag)
        self._dynamic_tags = {t for t in self._dynamic_tags if not t.startswith(prefix)}
        self._dynamic_tags.add(tag)

    def has_tag(self, tag: str) -> bool:
        """Check if a tag is present

        End the tag with `:` to look for a dynamic tag with that prefix.
        """
        if tag.endswith(DYNAMIC_SEPARATOR):
            return _find_dynamic(self._dynamic_tags, tag) is not None
        return tag in self._tags

    def has_dynamic_tag(self, tag: str) -> bool:
        """Check if an exact `name:argument` dynamic tag is present"""
        return tag in self._dynamic_tags

    def get_argument(self, prefix: str) -> Optional[str]:
        """Get the argument of the dynamic tag with the given prefix"""
        if not prefix.endswith(DYNAMIC_SEPARATOR):
            prefix += DYNAMIC_SEPARATOR
        found = _find_dynamic(self._dynamic_tags, prefix)
        if found is None:
            return None
        return found.partition(DYNAMIC_SEPARATOR)[2]

    # Rule operations

    def require_tag(self, tag: str) -> None:
        """Registers a tag that must be present to pass validation"""
        self._required_tags.add(tag)

    def unrequire_tag(self, tag: str) -> None:
        self._required_tags.discard(tag)

    def exclude_tag(self, tag: str) -> None:
        """Registers a tag that must not be present to pass validation"""
        self._excluded_tags.add(tag)

    def unexclude_tag(self, tag: str) -> None:
        self._excluded_tags.discard(tag)

    def set_validator(self, prefix: str, fn: Validator) -> None:
        """Register a validator for a dynamic tag prefix

        The validator receives the tag's argument. A candidate without a
        matching dynamic tag fails validation.
        """
        if not callable(fn):
            raise InvalidValidatorError(f"Validator for '{prefix}' is not callable")
        if not prefix.endswith(DYNAMIC_SEPARATOR):
            prefix += DYNAMIC_SEPARATOR
        self._validators[prefix] = fn

    def remove_validator(self, prefix: str) -> None:
        if not prefix.endswith(DYNAMIC_SEPARATOR):
            prefix += DYNAMIC_SEPARATOR
        self._validators.pop(prefix, None)

    # Validation

    def _coerce_candidate(self, candidate) -> "TaggedDataFormat":
        if candidate is None:
            return self
        if isinstance(candidate, TaggedDataFormat):
            return candidate
        if isinstance(candidate, (str, Mapping)):
            return TaggedDataFormat(candidate)
        raise UnsupportedSourceError("candidate", candidate)

    def first_failure(
        self, candidate: Union[str, "TaggedDataFormat", Mapping, None] = None
    ) -> Optional[ValidationStage]:
        """Run the validation pipeline and return the first stage that fails

        Stages run in order (format, excluded tags, required tags, dynamic
        tag validators) and stop at the first failure. Returns None when the
        candidate passes. Without a candidate this instance validates itself.
        """
        tdf = self._coerce_candidate(candidate)

        if self._required_format is not None and self._required_format != tdf._format:
            return ValidationStage.FORMAT

        names = tdf._tags | {_dynamic_prefix(t) for t in tdf._dynamic_tags}
        for tag in self._excluded_tags:
            # `b` and `b:` exclude any `b:` dynamic tag, `b:x` only that exact one
            if _is_dynamic(tag) and not tag.endswith(DYNAMIC_SEPARATOR):
                hit = tag in tdf._dynamic_tags
            else:
                hit = tag in tdf._tags or _dynamic_prefix(tag) in names
            if hit:
                return ValidationStage.EXCLUDED

        if not self._required_tags <= tdf._tags:
            return ValidationStage.REQUIRED

        for prefix, fn in self._validators.items():
            found = _find_dynamic(tdf._dynamic_tags, prefix)
            if found is None:
                return ValidationStage.DYNAMIC
            if not fn(found.partition(DYNAMIC_SEPARATOR)[2]):
                return ValidationStage.DYNAMIC

        return None

    def validate(self, candidate: Union[str, "TaggedDataFormat", Mapping, None] = None) -> bool:
        """Validate a candidate against this instance's rules"""
        stage = self.first_failure(candidate)
        if stage is not None:
            logger.debug("Validation failed at %s stage", stage.name.lower())
            return False
        return True


class TaggedDataFormatBuilder:
    """Builder for creating tagged data formats fluently"""

    def __init__(self, format: str = DEFAULT_FORMAT, base: Optional[TaggedDataFormat] = None):
        self._tdf = TaggedDataFormat({"format": format, "tags": [], "dynamic_tags": []}, base)
        if base is not None:
            # Records never inherit rules, builders do
            self._tdf._adopt_rules(base)

    def tag(self, tag: str) -> "TaggedDataFormatBuilder":
        self._tdf.add_tag(tag)
        return self

    def dynamic_tag(self, name: str, argument: str) -> "TaggedDataFormatBuilder":
        """Set a dynamic tag `name:argument`, replacing any previous value"""
        self._tdf.update_dynamic_tag(f"{name}{DYNAMIC_SEPARATOR}{argument}")
        return self

    def require_tag(self, tag: str) -> "TaggedDataFormatBuilder":
        self._tdf.require_tag(tag)
        return self

    def exclude_tag(self, tag: str) -> "TaggedDataFormatBuilder":
        self._tdf.exclude_tag(tag)
        return self

    def require_format(self, format: Optional[str]) -> "TaggedDataFormatBuilder":
        self._tdf.required_format = format
        return self

    def validator(self, prefix: str, fn: Validator) -> "TaggedDataFormatBuilder":
        self._tdf.set_validator(prefix, fn)
        return self

    def build(self) -> TaggedDataFormat:
        """Build the tagged data format

        The builder can keep being used; later changes do not affect
        formats already built.
        """
        return TaggedDataFormat(None, self._tdf)
