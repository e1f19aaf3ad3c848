"""
Port Derivation.

Maps a project identity to a TCP port inside a fixed window. Both sync
endpoints compute the same port independently; there is no negotiation.
"""

from .hashing import to_int32, shorten_id, utf16_code_units

PORT_RANGE_START = 3847
PORT_WINDOW_SIZE = 250


def port_for(project_identity: str) -> int:
    """
    Derive the rendezvous port for a project.

    The identity is first reduced to its short form, so a full project hash
    and its short id map to the same port. Distinct projects may collide
    inside the 250-port window; the handshake verifies identity afterwards.

    Args:
        project_identity: Full project hash or short id

    Returns:
        Port in [PORT_RANGE_START, PORT_RANGE_START + PORT_WINDOW_SIZE)
    """
    short_id = shorten_id(project_identity)

    h = 0
    for code in utf16_code_units(short_id):
        h = to_int32((h << 5) - h + code)

    return PORT_RANGE_START + abs(h) % PORT_WINDOW_SIZE
