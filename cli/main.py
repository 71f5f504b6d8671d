#!/usr/bin/env python3
"""
clipdeck CLI - Command line interface for the video catalog.
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn

from api.enums import QueueItemStatus
from api.errors import truncate_error
from config import (
    API_URL,
    ERROR_DETAIL_MAX_LENGTH,
    ERROR_SUMMARY_MAX_LENGTH,
    MAX_UPLOAD_SIZE,
    SUPPORTED_VIDEO_EXTENSIONS,
    SUPPORTED_VIDEO_EXTENSIONS_STR,
)
from uploader.errors import AuthorizationError, RemoteAPIError, UploaderError
from uploader.http_client import RemoteUploadClient
from uploader.metadata import is_valid_duration
from uploader.queue import UploadQueueController


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def validate_file(file_path):
    """
    Validate file exists, is readable and is a supported video.

    Args:
        file_path: Path object pointing to the file

    Returns:
        int: File size in bytes

    Raises:
        CLIError: If the file is missing, unreadable, empty, too large or not a video
    """
    if not file_path.exists():
        raise CLIError(f"File not found: {file_path}")

    if not file_path.is_file():
        raise CLIError(f"Path is not a file: {file_path}")

    if not os.access(file_path, os.R_OK):
        raise CLIError(f"File is not readable: {file_path}")

    if file_path.suffix.lower() not in SUPPORTED_VIDEO_EXTENSIONS:
        raise CLIError(f"Unsupported file type: {file_path.name}. Allowed: {SUPPORTED_VIDEO_EXTENSIONS_STR}")

    file_size = file_path.stat().st_size
    if file_size == 0:
        raise CLIError(f"File is empty: {file_path}")

    if file_size > MAX_UPLOAD_SIZE:
        max_size_gb = MAX_UPLOAD_SIZE / (1024 * 1024 * 1024)
        file_size_gb = file_size / (1024 * 1024 * 1024)
        raise CLIError(
            f"File too large ({file_size_gb:.2f} GB). "
            f"Maximum upload size is {max_size_gb:.0f} GB"
        )

    return file_size


def get_password(args) -> str:
    """Admin password from --password, else CLIPDECK_ADMIN_PASSWORD."""
    password = getattr(args, "password", None) or os.getenv("CLIPDECK_ADMIN_PASSWORD", "")
    if not password:
        raise CLIError("Admin password required. Use --password or set CLIPDECK_ADMIN_PASSWORD.")
    return password


def get_client() -> RemoteUploadClient:
    return RemoteUploadClient(API_URL)


def print_api_error(e: RemoteAPIError):
    if isinstance(e, AuthorizationError):
        print("Error: Authentication failed - invalid or missing admin password.")
        print("Check that CLIPDECK_ADMIN_PASSWORD matches the server configuration.")
    elif e.status_code == 0:
        print(f"Error: {e.message}")
        print("Make sure the clipdeck API is running.")
    else:
        print(f"Error: {truncate_error(e.message, ERROR_DETAIL_MAX_LENGTH)}")


def print_queue(items):
    print(f"{'#':<4} {'Duration':<10} {'Thumb':<8} {'Title':<40}")
    print("-" * 64)
    for index, item in enumerate(items, 1):
        title = item.title[:38] + ".." if len(item.title) > 40 else item.title
        print(f"{index:<4} {item.duration:<10} {item.thumbnail_source.value:<8} {title:<40}")


async def _run_upload(args, paths, password):
    async with get_client() as client:
        controller = UploadQueueController(client)
        try:
            items = await controller.enqueue(paths)
            if len(items) == 1:
                changes = {}
                if args.title:
                    changes["title"] = args.title
                if args.duration:
                    changes["duration"] = args.duration
                if changes:
                    controller.update(items[0].id, **changes)

            print_queue(controller.items)
            print()

            with Progress(
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                TextColumn("{task.fields[state]}"),
            ) as progress:
                tasks = {
                    item.id: progress.add_task(item.title[:40], total=100, state=item.status.value)
                    for item in controller.items
                }

                def on_change(item):
                    task_id = tasks.get(item.id)
                    if task_id is not None:
                        progress.update(task_id, completed=item.progress, state=item.status.value)

                controller.on_change = on_change
                return await controller.upload_all(password)
        finally:
            controller.close()


def cmd_upload(args):
    """Upload one or more videos through the bulk queue."""
    try:
        paths = [Path(f) for f in args.files]
        for path in paths:
            validate_file(path)
        if len(paths) > 1 and (args.title or args.duration):
            print("Warning: --title and --duration only apply when uploading a single file; ignoring")
        if len(paths) == 1 and args.duration and not is_valid_duration(args.duration):
            raise CLIError(f"Invalid duration '{args.duration}' (use m:ss or h:mm:ss)")
        password = get_password(args)

        results = asyncio.run(_run_upload(args, paths, password))

        failed = 0
        for item in results:
            if item.status == QueueItemStatus.DONE:
                print(f"  OK     {item.filename} -> video {item.remote_id}")
            else:
                failed += 1
                message = truncate_error(item.error_message, ERROR_SUMMARY_MAX_LENGTH)
                print(f"  FAILED {item.filename}: {message}")

        print(f"Uploaded {len(results) - failed} of {len(results)} videos.")
        if failed:
            sys.exit(1)

    except RemoteAPIError as e:
        print_api_error(e)
        sys.exit(1)
    except (CLIError, UploaderError) as e:
        print(f"Error: {e}")
        sys.exit(1)


def cmd_add(args):
    """Register a video that already exists on the host."""
    try:
        if args.duration and not is_valid_duration(args.duration):
            raise CLIError(f"Invalid duration '{args.duration}' (use m:ss or h:mm:ss)")
        password = get_password(args)
        title = args.title or args.file_code

        async def run():
            async with get_client() as client:
                return await client.add_by_reference(args.file_code, title, args.duration, password)

        video = asyncio.run(run())
        print("Success! Video added.")
        print(f"  ID: {video['id']}")
        print(f"  File code: {video['file_code']}")
        print(f"  Title: {video['title']}")

    except RemoteAPIError as e:
        print_api_error(e)
        sys.exit(1)
    except CLIError as e:
        print(f"Error: {e}")
        sys.exit(1)


def cmd_list(args):
    """List videos."""
    try:
        async def run():
            async with get_client() as client:
                return await client.list_videos(search=args.search)

        videos_list = asyncio.run(run())
        if not videos_list:
            if args.search:
                print(f"No videos match '{args.search}'.")
            else:
                print("No videos found.")
            return

        print(f"{'ID':<5} {'Status':<12} {'Duration':<10} {'Views':<8} {'Title':<40}")
        print("-" * 78)
        for v in videos_list:
            title = v["title"][:38] + ".." if len(v["title"]) > 40 else v["title"]
            print(f"{v['id']:<5} {v['status']:<12} {v['duration']:<10} {v['views']:<8} {title:<40}")

    except RemoteAPIError as e:
        print_api_error(e)
        sys.exit(1)


def cmd_delete(args):
    """Delete a video."""
    try:
        password = get_password(args)

        async def run():
            async with get_client() as client:
                return await client.delete_video(args.video_id, password)

        asyncio.run(run())
        print(f"Video {args.video_id} deleted.")
    except RemoteAPIError as e:
        print_api_error(e)
        sys.exit(1)
    except CLIError as e:
        print(f"Error: {e}")
        sys.exit(1)


def cmd_stats(args):
    """Show catalog totals."""
    try:
        password = get_password(args)

        async def run():
            async with get_client() as client:
                return await client.get_stats(password)

        stats = asyncio.run(run())
        print(f"Total videos: {stats['total_videos']}")
        print(f"Total views:  {stats['total_views']}")
    except RemoteAPIError as e:
        print_api_error(e)
        sys.exit(1)
    except CLIError as e:
        print(f"Error: {e}")
        sys.exit(1)


def cmd_verify(args):
    """Check the admin password against the server."""
    try:
        password = get_password(args)

        async def run():
            async with get_client() as client:
                return await client.verify_admin(password)

        if asyncio.run(run()):
            print("Admin password accepted.")
        else:
            print("Admin password rejected.")
            sys.exit(1)
    except RemoteAPIError as e:
        print_api_error(e)
        sys.exit(1)
    except CLIError as e:
        print(f"Error: {e}")
        sys.exit(1)


def main(argv=None):
    parser = argparse.ArgumentParser(prog="clipdeck", description="clipdeck CLI - Manage your video catalog")
    parser.add_argument("--password", help="Admin password (default: $CLIPDECK_ADMIN_PASSWORD)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Upload command
    upload_parser = subparsers.add_parser("upload", help="Upload one or more video files")
    upload_parser.add_argument("files", nargs="+", help="Video files to upload")
    upload_parser.add_argument("-t", "--title", help="Video title (single file only; default: filename)")
    upload_parser.add_argument("--duration", help="Override detected duration, e.g. 4:05 (single file only)")
    upload_parser.set_defaults(func=cmd_upload)

    # Add command
    add_parser = subparsers.add_parser("add", help="Add a video already on the host by file code")
    add_parser.add_argument("file_code", help="Video host file code")
    add_parser.add_argument("-t", "--title", help="Video title (default: file code)")
    add_parser.add_argument("--duration", help="Duration, e.g. 4:05")
    add_parser.set_defaults(func=cmd_add)

    # List command
    list_parser = subparsers.add_parser("list", help="List videos")
    list_parser.add_argument("-s", "--search", help="Only videos whose title or file code contains this text")
    list_parser.set_defaults(func=cmd_list)

    # Delete command
    del_parser = subparsers.add_parser("delete", help="Delete a video")
    del_parser.add_argument("video_id", type=positive_int, help="Video ID to delete")
    del_parser.set_defaults(func=cmd_delete)

    # Stats command
    stats_parser = subparsers.add_parser("stats", help="Show catalog totals")
    stats_parser.set_defaults(func=cmd_stats)

    # Verify command
    verify_parser = subparsers.add_parser("verify", help="Check the admin password")
    verify_parser.set_defaults(func=cmd_verify)

    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
