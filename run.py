import argparse
import sys
from pathlib import Path

import uvicorn

from kiosk_attendance.camera import decode_image
from kiosk_attendance.config import get_settings
from kiosk_attendance.exceptions import AttendanceError
from kiosk_attendance.logger import setup_logger


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Offline-first face recognition attendance kiosk")

    subparsers = parser.add_subparsers(dest="command", required=True)

    kiosk = subparsers.add_parser("kiosk", help="Run the kiosk runtime and its local HTTP API")
    kiosk.add_argument("--host", default="127.0.0.1", help="Host interface")
    kiosk.add_argument("--port", type=int, default=8000, help="Port")
    kiosk.add_argument("--camera", type=int, default=None, help="Camera index override")

    server = subparsers.add_parser("server", help="Run the central attendance server")
    server.add_argument("--host", default="0.0.0.0", help="Host interface")
    server.add_argument("--port", type=int, default=3001, help="Port")

    enroll = subparsers.add_parser("enroll", help="Enroll a person from one or more face photos")
    enroll.add_argument("--name", required=True, help="Full name")
    enroll.add_argument("--dni", required=True, help="National identity number")
    enroll.add_argument("--image", type=Path, nargs="+", required=True, help="Face photo(s)")

    users = subparsers.add_parser("list-users", help="List enrolled people")
    users.add_argument("--limit", type=int, default=50, help="Max rows to print")

    configure = subparsers.add_parser("configure-sync", help="Set the central server connection")
    configure.add_argument("--url", default=None, help="Central server base URL")
    configure.add_argument("--api-key", default=None, help="Bearer API key")
    toggle = configure.add_mutually_exclusive_group()
    toggle.add_argument("--enable", action="store_true", help="Enable sync")
    toggle.add_argument("--disable", action="store_true", help="Disable sync")

    subparsers.add_parser("sync", help="Run one full sync cycle now")
    subparsers.add_parser("test-connection", help="Check the central server health endpoint")
    subparsers.add_parser("status", help="Show device identity, approval and pending uploads")

    return parser


def _build_runtime(camera_index=None):
    from kiosk_attendance.kiosk_runtime import KioskRuntime

    settings = get_settings()
    if camera_index is not None:
        settings = settings.model_copy(update={"camera_index": int(camera_index)})
    return KioskRuntime(settings)


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = setup_logger("main")

    try:
        if args.command == "kiosk":
            from kiosk_attendance.web_app import create_kiosk_app

            app = create_kiosk_app(_build_runtime(args.camera))
            uvicorn.run(app, host=args.host, port=args.port, log_level="info")
            return 0

        if args.command == "server":
            uvicorn.run("central_server.main:app", host=args.host, port=args.port, log_level="info")
            return 0

        if args.command == "enroll":
            runtime = _build_runtime()
            if not runtime.engine.load_models():
                print("Face models are not available. Install the 'recognition' extra.")
                return 1
            runtime.refresh_matcher()
            runtime.sync_service.init(autosync=False)
            descriptors, photos = [], []
            for path in args.image:
                descriptor, photo = runtime.enrollment.capture_sample(decode_image(path.read_bytes()))
                descriptors.append(descriptor)
                if photo:
                    photos.append(photo)
            user = runtime.enrollment.enroll(args.name, args.dni, descriptors, photos=photos)
            runtime.sync_service.close()
            print(f"Enrolled {user.name} ({user.dni}) with {len(descriptors)} samples.")
            return 0

        if args.command == "list-users":
            runtime = _build_runtime()
            records = runtime.db.list_users()
            if not records:
                print("No people enrolled.")
                return 0

            print(f"{'DNI':<16} {'Samples':<8} {'Name'}")
            print("-" * 52)
            for record in records[: args.limit]:
                print(f"{record.dni:<16} {len(record.face_descriptors):<8} {record.name}")
            return 0

        if args.command == "configure-sync":
            runtime = _build_runtime()
            runtime.sync_service.init(autosync=False)
            changes = {}
            if args.url is not None:
                changes["server_url"] = args.url
            if args.api_key is not None:
                changes["api_key"] = args.api_key
            if args.enable or args.disable:
                changes["enabled"] = bool(args.enable)
            config = runtime.sync_service.update_config(autosync=False, **changes)
            print(f"Sync {'enabled' if config.enabled else 'disabled'} -> {config.base_url or '(no url)'}")
            return 0

        if args.command == "sync":
            runtime = _build_runtime()
            runtime.sync_service.init(autosync=False)
            if not runtime.sync_service.config.is_active:
                print("Sync is disabled or no server URL is configured.")
                return 1
            result = runtime.sync_service.full_sync()
            print(
                "Sync "
                f"{'succeeded' if result.success else 'finished with errors'}: "
                f"attendance={result.attendance_synced} ok/{result.attendance_failed} failed, "
                f"downloaded={result.downloaded}, uploaded={result.uploaded}"
            )
            return 0 if result.success else 1

        if args.command == "test-connection":
            runtime = _build_runtime()
            runtime.sync_service.init(autosync=False)
            outcome = runtime.sync_service.test_connection()
            print(f"[{outcome.reason}] {outcome.message}")
            return 0 if outcome.success else 1

        if args.command == "status":
            runtime = _build_runtime()
            runtime.sync_service.init(autosync=False)
            status = runtime.sync_service.check_device_status()
            print(f"Kiosk:           {runtime.kiosk_id}")
            print(f"Device status:   {status.value}")
            print(f"Enrolled people: {len(runtime.db.list_users())}")
            print(f"Pending uploads: {len(runtime.db.pending_attendance())}")
            return 0

    except AttendanceError as exc:
        logger.error("Application error: %s", exc)
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user.")
        return 1
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"Unexpected error: {exc}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
