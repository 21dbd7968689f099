import logging
import struct

MP4_BOXES = {b"ftyp", b"moov", b"mdat", b"free", b"skip", b"wide"}
MOV_BRANDS = {b"qt  ", b"mov "}
MAX_BOXES = 10

# anything bigger than this with an unknown signature is accepted
MIN_UNKNOWN_SIZE = 1024


def validate_mp4(content: bytes) -> bool:
    """Walk the top-level boxes and require at least one well-known box type."""
    if len(content) < 32:
        return False
    offset = 0
    seen = 0
    while offset < len(content) - 8 and seen < MAX_BOXES:
        (size,) = struct.unpack(">I", content[offset : offset + 4])
        box = content[offset + 4 : offset + 8]
        logging.debug("mp4 box %r size %d", box, size)
        if size == 0 or size == 1:
            # box runs to EOF or uses a 64-bit size
            break
        if size < 8 or size > len(content):
            logging.debug("mp4 box size out of range: %d", size)
            return False
        if box in MP4_BOXES:
            seen += 1
        offset += size
    return seen > 0


def validate_video(content: bytes, url: str = "") -> bool:
    if len(content) < 12:
        logging.debug("video too small: %s (%d bytes)", url, len(content))
        return False
    if content[4:8] == b"ftyp":
        if content[8:12] in MOV_BRANDS:
            logging.debug("quicktime container: %s", url)
            return True
        return validate_mp4(content)
    if content[:4] == b"\x1a\x45\xdf\xa3":
        logging.debug("webm container: %s", url)
        return True
    if content[:4] == b"RIFF" and content[8:12] == b"AVI ":
        logging.debug("avi container: %s", url)
        return True
    if len(content) > MIN_UNKNOWN_SIZE:
        logging.debug("unknown video format, accepting: %s (%d bytes)", url, len(content))
        return True
    return False
