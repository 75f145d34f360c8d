import os

# Configuration is read from the environment when flags are absent; make sure
# the developer's shell does not leak into tests that exercise the CLI.
for _name in (
    "DOMAIN",
    "CERTIFICATE_DIR",
    "MY_REAL_HOST",
    "HOST_AUTH_MODE",
    "TRY_CERT_NO_MORE_OFTEN_THAN",
    "SERVE_HTTP",
    "ACME_STAGING",
    "ACME_ENDPOINT",
    "ACME_EMAIL",
    "MIRROR_STS_FROM",
    "STS_MODE",
    "STS_MX",
    "STS_MAX_AGE",
    "MIRROR_TIMEOUT",
    "ATTEMPT_STORE",
    "ATTEMPT_STORE_PATH",
    "PORT",
    "HTTPS_PORT",
    "ACME_HTTP_PORT",
    "LOG_LEVEL",
    "LOG_FORMAT",
):
    os.environ.pop(_name, None)
