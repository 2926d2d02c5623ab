"""
Send a remote manual check to a running linewatch process.

    python -m web.pub production
    python -m web.pub --port 9001 qsl cd
"""
import argparse
import asyncio
import datetime

import aiozmq
import aiozmq.rpc

import linewatch.scheduler

DEFAULT_PORT = 9001


def make_parser():
    """ The command line of the trigger publisher. """
    parser = argparse.ArgumentParser(prog='linewatch-trigger', description='Trigger manual poll cycles.')
    parser.add_argument('families', nargs='+', help='The sheet families to check, i.e. production qsl')
    parser.add_argument('--port', type=int, default=DEFAULT_PORT, help='The zmq trigger port of the process.')

    return parser


async def pub(families, port=DEFAULT_PORT, *, delay=0.5):
    """
    Connect to the trigger subscriber and request one cycle per family.

    Returns: The number of triggers sent.
    """
    publisher = await aiozmq.rpc.connect_pubsub(connect=f'tcp://127.0.0.1:{port}')
    # The subscriber drops messages published before the connection settles
    await asyncio.sleep(delay)
    try:
        for family in families:
            timestamp = datetime.datetime.now(datetime.timezone.utc).isoformat()
            await publisher.publish(linewatch.scheduler.CHANNEL).trigger(family, timestamp)
            print(f"Triggered {family} at {timestamp}")
    finally:
        publisher.close()
        await publisher.wait_closed()

    return len(families)


def main(argv=None):  # pragma: no cover
    """ Entry for the linewatch-trigger script. """
    args = make_parser().parse_args(argv)
    asyncio.run(pub(args.families, args.port))


if __name__ == "__main__":  # pragma: no cover
    main()
