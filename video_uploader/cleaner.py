from apscheduler.schedulers.background import BackgroundScheduler

from video_uploader.config import CLEANER_INTERVAL_MINUTES, SESSION_TTL_SECONDS


def run_cleanup(session_store, object_store, logger) -> dict:
    """Drop expired in-memory sessions and reclaim staged parts of abandoned uploads."""
    purged = session_store.purge_expired()
    reclaimed = object_store.reclaim_abandoned(SESSION_TTL_SECONDS)
    if purged or reclaimed:
        logger.info("event=cleanup_done sessions_purged=%s uploads_reclaimed=%s", purged, reclaimed)
    return {"sessions_purged": purged, "uploads_reclaimed": reclaimed}


def start_cleaner(session_store, object_store, logger):
    scheduler = BackgroundScheduler()

    def _job():
        try:
            run_cleanup(session_store, object_store, logger)
        except OSError as e:
            logger.error("Storage error in cleanup job: %s", str(e))
        except Exception as e:
            logger.error("Unexpected error in cleanup job: %s", str(e))

    scheduler.add_job(_job, "interval", minutes=CLEANER_INTERVAL_MINUTES)
    scheduler.start()
    return scheduler
