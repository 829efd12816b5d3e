"""Join a room from the command line and log what happens in it."""
from __future__ import annotations

import argparse
import asyncio
import logging

from meshroom.client.config import get_client_settings
from meshroom.client.room import JoinRejectedError, RoomSession


async def main(args: argparse.Namespace) -> None:
	settings = get_client_settings()
	updates = {"default_quality": args.quality}
	if args.video:
		updates["video_device"] = args.video
	if args.audio:
		updates["audio_device"] = args.audio
	settings = settings.model_copy(update=updates)

	async def on_event(message: dict) -> None:
		if message.get("type") not in ("ice-candidate", "remote-track"):
			logging.info("event %s", message.get("type"))

	try:
		async with RoomSession(args.room, args.user, args.name or args.user, settings=settings, on_event=on_event) as room:
			logging.info("In room %s as %s; Ctrl+C to leave", args.room, room.connection_id)
			await asyncio.Event().wait()
	except JoinRejectedError as exc:
		logging.error("Join rejected (%s): %s", exc.code, exc)


if __name__ == "__main__":
	parser = argparse.ArgumentParser(description=__doc__)
	parser.add_argument("room")
	parser.add_argument("user")
	parser.add_argument("--name")
	parser.add_argument("--video", help="capture device, e.g. /dev/video0")
	parser.add_argument("--audio", help="audio device, e.g. default")
	parser.add_argument("--quality", default="high")
	logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
	try:
		asyncio.run(main(parser.parse_args()))
	except KeyboardInterrupt:
		pass
