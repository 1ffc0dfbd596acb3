"""Configuration constants for ragent."""

# Listener settings
RAGENT_LISTEN_HOST = "0.0.0.0"  # Listen address for inbound TLS connections
RAGENT_LISTEN_PORT = 4514  # Listen port for inbound TLS connections

# Upstream (local service) settings
RAGENT_UPSTREAM_HOST = "127.0.0.1"  # Local agent the relay forwards to
RAGENT_UPSTREAM_PORT = 28589  # Local agent port
RAGENT_UPSTREAM_CONNECT_TIMEOUT = 10.0  # Seconds to wait for upstream connect

# Admission settings
RAGENT_CAPABILITY = "1.0/full"  # Capability a grant must carry to use the relay
RAGENT_EVERYONE_KEY = "----EqP__WY477nofMYUz2MNFBsfa5IK_RBlRvKptDY="  # Wildcard receiver
RAGENT_HANDSHAKE_TIMEOUT = 30.0  # Seconds to wait for the client's nonce reply

# Relay settings
RAGENT_BUFFER_SIZE = 4096  # Read size per copy iteration
RAGENT_REPORT_INTERVAL = 5.0  # Seconds between byte-count log lines

# Certificate settings
RAGENT_CERT_VALIDITY_DAYS = 365  # Self-signed certificate lifetime
RAGENT_CERT_KEY_SIZE = 2048  # RSA key size for the TLS certificate

# Storage settings
RAGENT_GRANTS_DB = "~/.ragent/grants.db"  # Grant directory location
RAGENT_IDENTITY_FILE = "~/.ragent/identity.json"  # Default identity file

# Logging
RAGENT_LOG_FILE = None  # Optional log file path (None for console only)
