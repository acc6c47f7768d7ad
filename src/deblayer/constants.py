from os import getenv

# defaults for InstallerConfig, overridable from the environment
DEFAULT_ARCHITECTURE = getenv("DEBLAYER_ARCHITECTURE", "amd64")
DEFAULT_DOWNLOAD_CONCURRENCY = int(getenv("DEBLAYER_DOWNLOAD_CONCURRENCY", "8"))
DEFAULT_EXTRACT_WORKERS = int(getenv("DEBLAYER_EXTRACT_WORKERS", "4"))
DEFAULT_DEADLINE = float(getenv("DEBLAYER_DEADLINE", "1800"))
DEFAULT_RETRY_ATTEMPTS = int(getenv("DEBLAYER_RETRY_ATTEMPTS", "5"))
DEFAULT_HTTP_TIMEOUT = float(getenv("DEBLAYER_HTTP_TIMEOUT", "60"))
DEFAULT_SUGGESTION_COUNT = 3

# Packages index variants, most preferred first
PACKAGES_VARIANTS = ["Packages.xz", "Packages.gz", "Packages"]

# https://wiki.debian.org/Multiarch/Tuples
# fmt: off
MULTIARCH_TRIPLETS = {
    "amd64": "x86_64-linux-gnu",
    "arm64": "aarch64-linux-gnu",
    "armel": "arm-linux-gnueabi",
    "armhf": "arm-linux-gnueabihf",
    "i386": "i386-linux-gnu",
    "mips64el": "mips64el-linux-gnuabi64",
    "ppc64el": "powerpc64le-linux-gnu",
    "riscv64": "riscv64-linux-gnu",
    "s390x": "s390x-linux-gnu",
}
# fmt: on
