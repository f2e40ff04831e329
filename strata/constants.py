"""
Shared module to hold constant values for the library
"""

# Label applied to every DerivedInstance so they can be listed together
MANAGED_BY_LABEL_NAME = "strata.io/managed-by"
MANAGED_BY_LABEL_VALUE = "strata"

# Label pointing from a DerivedInstance back to the name of its owner
OWNER_NAME_LABEL_NAME = "strata.io/owner-name"

# Annotation holding the EffectiveConfig version that a DerivedInstance reflects
EFFECTIVE_CONFIG_VERSION_ANNOTATION_NAME = "strata.io/effective-config-version"

# Annotation holding the serialized version tokens of every consulted source
SOURCE_VERSIONS_ANNOTATION_NAME = "strata.io/source-versions"

# Spec sections of a ManagedObject
INLINE_CONFIG_FIELD = "config"
CONFIG_REFS_FIELD = "configRefs"

# Keys inside a single entry of the configRefs list
REF_NAME_KEY = "name"
REF_NAMESPACE_KEY = "namespace"
REF_SELECTOR_KEY = "selector"
REF_MATCH_LABELS_KEY = "matchLabels"

# Status keys
STATUS_RESOLVED = "resolved"
STATUS_LAST_ERROR = "lastError"
STATUS_LAST_ERROR_MESSAGE = "lastErrorMessage"
STATUS_EFFECTIVE_CONFIG_VERSION = "effectiveConfigVersion"
STATUS_RETRY_ATTEMPTS = "retryAttempts"
STATUS_STATE = "state"

# Delimiter used for nested dict keys
NESTED_DICT_DELIM = "."

# String forms used when stringifying boolean config values
TRUE_STRING = "true"
FALSE_STRING = "false"

## Thread Constants

# Minimum wait time between checks in the timer thread
MIN_SLEEP_TIME = 0.01

# How long the reconcile thread waits on its queue before rechecking shutdown
REQUEST_POLL_TIME = 0.5

# Default timeout when joining threads on shutdown
JOIN_THREAD_TIMEOUT = 5
