import sys
from .config import Config, apply_cli_overrides, build_arg_parser
from .logging_setup import setup_logger
from .daemon import startup, run_loop

def main(argv=None):
    args = build_arg_parser().parse_args(argv)
    cfg = apply_cli_overrides(Config(), args)

    logger = setup_logger(
        name=cfg.logger_name,
        level=cfg.log_level,
        log_file=cfg.log_file,
        max_bytes=cfg.log_max_bytes,
        backup_count=cfg.log_backup_count,
        enable_structured_console=cfg.enable_structured_console,
        enable_structured_file=cfg.enable_structured_file,
        structured_log_file=cfg.structured_log_file
    )

    exit_code = 0
    try:
        reconciler, state = startup(cfg)
        run_loop(cfg, reconciler, state)
    except SystemExit as e:
        exit_code = e.code if isinstance(e.code, int) else 1
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
        exit_code = 130
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        exit_code = 1
    finally:
        for h in logger.handlers:
            try:
                h.flush()
            except (OSError, ValueError):
                pass
        sys.exit(exit_code)

if __name__ == "__main__":
    main()
