"""Training data generation and the offline training pipeline"""

import logging
import time
from dataclasses import dataclass
from typing import Dict, List

import numpy as np
from tqdm.auto import tqdm

from config import TRAINING_CONFIG

logger = logging.getLogger(__name__)


@dataclass
class TrainingExample:
    user_vector: np.ndarray
    post_vector: np.ndarray
    label: int  # 1 = liked, 0 = sampled negative


class TrainingDataGenerator:
    """
    Labeled (user, post) pairs from like history.

    - Up to 50 liked posts per user as positives
    - 3 negatives per positive from the newest posts the user neither
      liked nor authored
    - Users with fewer than 2 liked posts are skipped
    """

    def __init__(self, store, features,
                 negative_ratio: int = TRAINING_CONFIG["negative_ratio"],
                 max_positives_per_user: int = TRAINING_CONFIG["max_positives_per_user"],
                 min_likes_per_user: int = TRAINING_CONFIG["min_likes_per_user"]):
        self.store = store
        self.features = features
        self.negative_ratio = negative_ratio
        self.max_positives_per_user = max_positives_per_user
        self.min_likes_per_user = min_likes_per_user

    def examples_for_user(self, user_id: str) -> List[TrainingExample]:
        liked_ids = self.store.get_liked_post_ids(user_id, limit=self.max_positives_per_user)
        if len(liked_ids) < self.min_likes_per_user:
            return []

        # Exclude every liked post from the negative pool, not just the sampled positives
        all_liked = self.store.get_liked_post_ids(user_id)
        negative_ids = self.store.get_recent_post_ids(
            exclude_author_id=user_id,
            exclude_post_ids=all_liked,
            limit=len(liked_ids) * self.negative_ratio,
        )

        user_vector = self.features.build_user_vector(user_id)
        post_vectors = self.features.build_post_vectors(liked_ids + negative_ids)

        examples = [
            TrainingExample(user_vector=user_vector, post_vector=vec, label=1)
            for vec in post_vectors[:len(liked_ids)]
        ]
        examples.extend(
            TrainingExample(user_vector=user_vector, post_vector=vec, label=0)
            for vec in post_vectors[len(liked_ids):]
        )
        return examples

    def generate_training_data(self) -> List[TrainingExample]:
        examples: List[TrainingExample] = []
        users = self.store.get_users_with_post_likes()
        logger.info(f"Generating training data for {len(users)} users with likes")

        for user_id in tqdm(users, desc="Training data", unit="user"):
            examples.extend(self.examples_for_user(user_id))

        positives = sum(e.label for e in examples)
        logger.info(f"Generated {len(examples)} examples "
                    f"({positives} positive, {len(examples) - positives} negative)")
        return examples


class TrainingService:
    """Vocabulary rebuild -> example generation -> model fit -> persistence"""

    def __init__(self, vocabulary, generator: TrainingDataGenerator, model,
                 min_examples: int = TRAINING_CONFIG["min_examples"]):
        self.vocabulary = vocabulary
        self.generator = generator
        self.model = model
        self.min_examples = min_examples

    def run_training_pipeline(self) -> Dict:
        """
        Returns:
            {"success": bool, "example_count": int, "metrics": {...}}; metrics
            only on success. The previous model stays active on any failure.
        """
        start_time = time.time()
        logger.info("=" * 60)
        logger.info("Starting recommendation training pipeline")
        logger.info("=" * 60)

        try:
            logger.info("Step 1/3: Rebuilding vocabularies...")
            self.vocabulary.rebuild_all()

            logger.info("Step 2/3: Generating training data...")
            examples = self.generator.generate_training_data()

            if len(examples) < self.min_examples:
                logger.warning(f"Insufficient training data ({len(examples)} examples). "
                               f"Need at least {self.min_examples}.")
                return {"success": False, "example_count": len(examples)}

            logger.info("Step 3/3: Training model...")
            history = self.model.train(examples)

        except Exception as e:
            logger.exception(f"Training pipeline failed: {e}")
            return {"success": False, "example_count": 0}

        metrics = {key: float(values[-1]) for key, values in history.items() if values}
        logger.info(f"Training complete in {time.time() - start_time:.3f}s. "
                    f"Loss: {metrics.get('loss', 0):.4f}, Accuracy: {metrics.get('accuracy', 0):.4f}")

        return {"success": True, "example_count": len(examples), "metrics": metrics}
