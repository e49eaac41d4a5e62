"""Attribute keys, markers and classification hints shared by the scan engine."""

ASTERISK = '*'
DOT = '.'
SLASH = '/'

# separator of multi-valued attributes (paths, asset id chains)
PATH_DELIMITER = '|\n'

MARKER_CROSS = 'x'
MARKER_CONTAINS = 'c'

HINT_SCAN = 'scan'
HINT_ATOMIC = 'atomic'
HINT_IGNORE = 'ignore'

ASSET_ID_PREFIX = 'AID-'

# persistent artifact attributes
KEY_PATH_IN_ASSET = 'Path in Asset'
KEY_HASH_SHA1 = 'Hash (SHA-1)'
KEY_HASH_SHA256 = 'Hash (SHA-256)'
KEY_TYPE = 'Type'
KEY_COMPONENT_SOURCE_TYPE = 'Component Source Type'
KEY_PURL = 'PURL'
KEY_COMPONENT_PATTERN = 'Component Pattern'
KEY_ERRORS = 'Errors'
KEY_ARTIFACT_ID = 'Artifact Id'
KEY_ORGANIZATION = 'Organization'

# intermediate processing attributes; stripped once the scan completed
ATTRIBUTE_KEY_ARTIFACT_PATH = 'ARTIFACT_PATH'
ATTRIBUTE_KEY_ASSET_ID_CHAIN = 'ASSET_ID_CHAIN'
ATTRIBUTE_KEY_UNWRAP = 'UNWRAP'
ATTRIBUTE_KEY_UNWRAPPED = 'UNWRAPPED'
ATTRIBUTE_KEY_ANCHOR = 'ANCHOR'
ATTRIBUTE_KEY_INSPECTED = 'INSPECTED'
ATTRIBUTE_KEY_SCAN_DIRECTIVE = 'SCAN_DIRECTIVE'

SCAN_DIRECTIVE_DELETE = 'delete'

INTERMEDIATE_ATTRIBUTES = (
    ATTRIBUTE_KEY_ARTIFACT_PATH,
    ATTRIBUTE_KEY_ASSET_ID_CHAIN,
    ATTRIBUTE_KEY_UNWRAP,
    ATTRIBUTE_KEY_UNWRAPPED,
    ATTRIBUTE_KEY_ANCHOR,
    ATTRIBUTE_KEY_INSPECTED,
    ATTRIBUTE_KEY_SCAN_DIRECTIVE,
)

# asset metadata keys
KEY_ASSET_PATH = 'Asset Path'
KEY_INSPECTION_SOURCE = 'Inspection Source'
