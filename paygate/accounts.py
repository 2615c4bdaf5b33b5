"""Program-derived and associated token account addresses."""

from solders.pubkey import Pubkey

from paygate.config import ASSOCIATED_TOKEN_PROGRAM_ID, REWARD_POOL_SEED, TOKEN_PROGRAM_ID


def _pubkey(value):
    return value if isinstance(value, Pubkey) else Pubkey.from_string(value)


def find_program_address(seeds, program_id):
    """Return ``(address, bump)`` for the PDA of ``seeds`` under ``program_id``."""
    return Pubkey.find_program_address(list(seeds), _pubkey(program_id))


def get_associated_token_address(owner, mint):
    """ATA of ``owner`` for ``mint``; PDA owners are allowed (off-curve)."""
    address, _ = Pubkey.find_program_address(
        [bytes(_pubkey(owner)), bytes(Pubkey.from_string(TOKEN_PROGRAM_ID)), bytes(_pubkey(mint))],
        Pubkey.from_string(ASSOCIATED_TOKEN_PROGRAM_ID),
    )
    return address


def reward_pool_vault(program_id, mint):
    """Token account holding the reward pool's funds for ``mint``."""
    pool, _ = find_program_address([REWARD_POOL_SEED], program_id)
    return str(get_associated_token_address(pool, mint))
