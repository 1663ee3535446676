import atexit
import logging
from flask import Flask

from cache import RedisCache
from features import FeatureService
from ranking_model import ModelService
from routes import register_routes
from scheduler import TrainingScheduler
from service import RecommendationService
from store import PostgresStore
from training import TrainingDataGenerator, TrainingService
from vocabulary import VocabularyService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(store=None, cache=None, model=None):
    """
    Wire the services and build the Flask app.

    Args:
        store: FeedStore (defaults to PostgresStore on DATABASE_URL)
        cache: Cache (defaults to RedisCache on REDIS_URL)
        model: ModelService (defaults to the checkpoint under MODEL_DIR)

    Returns:
        (app, scheduler); the scheduler is not started
    """
    store = store or PostgresStore()
    cache = cache or RedisCache()
    model = model or ModelService()

    vocabulary = VocabularyService(store, cache)
    features = FeatureService(store, cache, vocabulary)
    generator = TrainingDataGenerator(store, features)
    training = TrainingService(vocabulary, generator, model)
    service = RecommendationService(store, cache, features, model)
    scheduler = TrainingScheduler(training)

    app = Flask(__name__)
    register_routes(app, service, scheduler)

    if model.is_model_trained():
        logger.info(f"Using ranking model trained at {model.get_last_trained_at()}")
    else:
        logger.info("No trained ranking model yet, serving heuristic feeds")

    return app, scheduler


def main():
    """Main function - run as Flask API server with scheduled retraining"""
    app, scheduler = create_app()
    scheduler.start()
    atexit.register(scheduler.shutdown)
    app.run(host="0.0.0.0", port=8000, debug=False)


if __name__ == "__main__":
    main()
