from .backends import SerialBackend

_MARKERS = ("rfcomm", "mindset", "mindwave", "neurosky", "thinkgear")


def _is_mindset_port(device: dict) -> bool:
    text = f"{device.get('name') or ''} {device.get('address') or ''}".lower()
    return any(marker in text for marker in _MARKERS)


def find_devices(verbose=True):
    """List serial ports that look like a paired Mindset. Call 'find' from the terminal."""
    backend = SerialBackend()
    if verbose:
        print("Searching for Mindset serial ports...")
    devices = backend.scan()
    mindsets = [d for d in devices if _is_mindset_port(d)]

    if verbose:
        if mindsets:
            for m in mindsets:
                print(f'Found device {m["name"]} on {m["address"]}')
        else:
            print(
                "No Mindset ports found. Pair the headset and bind it to an RFCOMM port "
                "(e.g. 'rfcomm bind 0 <MAC>')."
            )

    return mindsets


def resolve_address(verbose: bool = True) -> str:
    """
    Return the serial port of the single Mindset found.

    Raises ValueError if zero or multiple candidate ports are found.
    """
    devices = find_devices(verbose=verbose)
    if len(devices) == 0:
        raise ValueError("No Mindset ports discovered. Ensure the headset is paired and bound.")
    if len(devices) > 1:
        raise ValueError("Multiple Mindset ports discovered. Please specify --address to choose one.")

    return devices[0]["address"]
