import math
import time
import logging
from datetime import datetime
from typing import Dict, Optional
from flask import request, jsonify

from config import RECOMMENDATION_CONFIG
from store import StoreError

logger = logging.getLogger(__name__)


def _requester_id() -> Optional[str]:
    """Authentication happens upstream; the gateway forwards the user id"""
    user_id = request.headers.get("X-User-Id") or request.args.get("user_id")
    return user_id.strip() if user_id and user_id.strip() else None


def _unauthorized():
    return jsonify({"success": False, "message": "Unauthorized"}), 401


def register_routes(app, service, scheduler):
    """Register all Flask routes"""

    @app.route("/feed/recommended", methods=["GET"])
    def get_recommended_feed():
        """Personalized feed page for the requesting user"""
        user_id = _requester_id()
        if not user_id:
            return _unauthorized()

        try:
            page = int(request.args.get("page", 1))
            limit = int(request.args.get("limit", RECOMMENDATION_CONFIG["default_limit"]))
        except ValueError:
            return jsonify({"error": "page and limit must be positive integers"}), 400
        if page < 1 or limit < 1:
            return jsonify({"error": "page and limit must be positive integers"}), 400
        limit = min(limit, RECOMMENDATION_CONFIG["max_limit"])

        try:
            start_time = time.time()
            feed = service.get_recommended_feed(user_id, page=page, limit=limit)
            logger.info(f"Recommended feed served for {user_id} in {time.time() - start_time:.3f}s")
        except StoreError as e:
            logger.error(f"Data store error building feed for {user_id}: {e}")
            return jsonify({"error": "Failed to load recommended feed"}), 500
        except Exception as e:
            logger.error(f"Error building feed for {user_id}: {e}")
            return jsonify({"error": f"Failed to build recommended feed: {str(e)}"}), 500

        return jsonify({
            "data": feed["posts"],
            "pagination": {
                "page": feed["page"],
                "limit": feed["limit"],
                "total": feed["total"],
                "totalPages": math.ceil(feed["total"] / feed["limit"]),
            },
        })

    @app.route("/feed/recommended/status", methods=["GET"])
    def get_recommendation_status():
        """Model state and whether this user gets ML ranking"""
        user_id = _requester_id()
        if not user_id:
            return _unauthorized()

        try:
            status = service.get_status(user_id)
        except Exception as e:
            logger.error(f"Error getting recommendation status for {user_id}: {e}")
            return jsonify({"error": f"Failed to get recommendation status: {str(e)}"}), 500

        return jsonify({"success": True, "data": status.to_json()})

    @app.route("/events/process", methods=["POST"])
    def process_events():
        """Apply like/comment/follow/post/skill events to the feature caches"""
        start_time = time.time()
        data = request.get_json(silent=True) or {}
        events = data.get("events", [])

        if not events:
            return jsonify({"error": "No events provided"}), 400

        try:
            process_start = time.time()
            applied = service.process_events(events)
        except StoreError as e:
            logger.error(f"Data store error processing events: {e}")
            return jsonify({"error": "Failed to process events"}), 500
        except Exception as e:
            logger.error(f"Error processing events: {e}")
            return jsonify({"error": f"Failed to process events: {str(e)}"}), 500
        process_time = time.time() - process_start
        total_time = time.time() - start_time

        logger.info(f"Event processing completed: {applied}/{len(events)} events in {process_time:.3f}s (total: {total_time:.3f}s)")

        return jsonify(create_performance_response(
            f"Processed {applied} of {len(events)} events", applied, process_time, total_time
        ))

    @app.route("/training/train", methods=["POST"])
    def train_ranking_model():
        """Queue a training run on the scheduler; results show up in /health"""
        if not scheduler.scheduler.running:
            return jsonify({"error": "Training scheduler is not running"}), 503

        if not scheduler.trigger_now():
            return jsonify({"error": "Training already in progress"}), 409

        return jsonify({
            "message": "Ranking model training queued",
            "queued_at": datetime.now().isoformat(),
            "scheduler": scheduler.status(),
        }), 202

    @app.route("/health", methods=["GET"])
    def health_check():
        """Health check endpoint"""
        return jsonify({
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "model": {
                "trained": service.model.is_model_trained(),
                "total_training_examples": service.model.get_total_training_examples(),
            },
            "scheduler": scheduler.status(),
        })


def create_performance_response(message: str, count: int, processing_time: float,
                                total_time: float) -> Dict:
    """Create standardized performance response"""
    return {
        "message": message,
        "processed_at": datetime.now().isoformat(),
        "performance": {
            "items_count": count,
            "processing_time_seconds": round(processing_time, 3),
            "total_time_seconds": round(total_time, 3),
            "items_per_second": round(count / processing_time, 2) if processing_time > 0 else 0
        }
    }
