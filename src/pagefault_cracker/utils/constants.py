"""Constants for the page-fault key recovery tooling."""

# -- Memory --
PAGE_SIZE: int = 4096
PAGE_SHIFT: int = 12

# -- Exec trace analysis --
# Retired-instruction count of the fault preceding the first "choose_t" call.
# Found by manual analysis of one OpenSSH build.
CHOOSE_T_MARKER_RET_INSTR: int = 9068

# -- EdDSA (OpenSSH ge25519_scalarmult_base) --
EDDSA_MEM_ACCESSES_PER_CYCLE: int = 10
EDDSA_MAIN_LOOP_CYCLES: int = 85
EDDSA_STACK_BUF_ALIGNMENT: int = 16
EDDSA_STACK_BUF_BYTES: int = 256
EDDSA_IGNORE_REPEATS: int = 2
EDDSA_ATTACK_REPEATS: int = 11
EDDSA_SAVE_POINTS: frozenset[int] = frozenset({1, 3, 5, 7, 9, 11, 13, 15, 19, 20})
EDDSA_WRITE_TRACK_START_IDX: int = 1

# Values tried for the unobservable digit of cycle 0
EDDSA_FIRST_DIGIT_CANDIDATES: tuple[int, ...] = (1, -1, 2, -2, 3, -3, -4)
FORGED_MESSAGE: bytes = b"test message"

# -- Stack buffer locator --
STACK_PATTERN_WRITE_FAULTS: int = 3
STACK_PATTERN_SCAN_WINDOW: int = 10

# -- ECDH (OpenSSL x25519 montgomery ladder) --
ECDH_BLOCK_BYTES: int = 16
ECDH_LADDER_ITERATIONS: int = 255
ECDH_UNKNOWN_HIGH_BITS: int = 1
ECDH_BASE_INDEX_INIT: int = 0
ECDH_BASE_DELTA_A: int = 17
ECDH_BASE_DELTA_B: int = 1
ECDH_SECOND_INDEX_INIT: int = 18
ECDH_SECOND_DELTA: int = 18
ECDH_IGNORE_CYCLES: int = 3
ECDH_SCALAR_BITS: int = 256
OPENSSL_SECRET_MARKER: str = "secretFromOpenSSL"

# -- Curve25519 --
ED25519_ORDER: int = 2**252 + 27742317777372353535851937790883648493
ED25519_SIGNATURE_SIZE: int = 64
ED25519_KEY_SIZE: int = 32

# -- Capture --
PROGRESS_INTERVAL_S: float = 10.0
DESYNC_WARN_THRESHOLD: int = 100
