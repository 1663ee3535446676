"""
ranking_model.py

Feed-forward ranking network: P(user engages with post) from the
concatenated user (196) and post (197) feature vectors.
"""

import logging
import os
import pickle
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

import numpy as np
import torch
import torch.nn as nn
from sklearn.metrics import roc_auc_score
from torch.utils.data import DataLoader, TensorDataset

from config import MODEL_DIR, MODEL_FILENAME, MODEL_INPUT_DIM, TRAINING_CONFIG

logger = logging.getLogger(__name__)


class ModelNotAvailableError(RuntimeError):
    """Prediction requested with no resident and no persisted model"""


# ============================================================
# NETWORK
# ============================================================

class RankingNet(nn.Module):
    """
    393 -> 128 -> 64 -> 32 -> 1

    - ReLU hidden layers with He initialization
    - Dropout after the first two hidden layers (small training sets)
    - Sigmoid output
    """

    def __init__(self, input_dim=MODEL_INPUT_DIM, hidden_layers=None, dropout_rates=None):
        super().__init__()
        hidden_layers = hidden_layers or TRAINING_CONFIG["hidden_layers"]
        dropout_rates = dropout_rates or TRAINING_CONFIG["dropout_rates"]

        self.input_dim = input_dim
        self.hidden_layers = list(hidden_layers)
        self.dropout_rates = list(dropout_rates)

        modules = []
        in_size = input_dim
        for i, layer_size in enumerate(self.hidden_layers):
            modules.append(nn.Linear(in_size, layer_size))
            modules.append(nn.ReLU())
            if i < len(self.dropout_rates):
                modules.append(nn.Dropout(self.dropout_rates[i]))
            in_size = layer_size

        self.hidden = nn.Sequential(*modules)
        self.output = nn.Linear(in_size, 1)

        self._init_weights()

    def _init_weights(self):
        """He init for ReLU layers, Xavier for the sigmoid output"""
        for m in self.hidden.modules():
            if isinstance(m, nn.Linear):
                nn.init.kaiming_normal_(m.weight, nonlinearity="relu")
                nn.init.constant_(m.bias, 0)
        nn.init.xavier_uniform_(self.output.weight)
        nn.init.constant_(self.output.bias, 0)

    def forward(self, x):
        """
        Args:
            x: (batch_size, input_dim) float tensor

        Returns:
            (batch_size,) tensor of probabilities in [0, 1]
        """
        return torch.sigmoid(self.output(self.hidden(x))).squeeze(-1)


@dataclass(frozen=True)
class ModelSnapshot:
    """The resident model; replaced wholesale, never mutated"""

    network: RankingNet
    trained_at: Optional[datetime]
    total_training_examples: int


# ============================================================
# SERVICE
# ============================================================

class ModelService:
    def __init__(
        self,
        model_dir: str = MODEL_DIR,
        epochs: int = TRAINING_CONFIG["epochs"],
        batch_size: int = TRAINING_CONFIG["batch_size"],
        learning_rate: float = TRAINING_CONFIG["learning_rate"],
        validation_split: float = TRAINING_CONFIG["validation_split"],
        seed: Optional[int] = None,
        device: Optional[str] = None,
    ):
        self.model_dir = model_dir
        self.model_path = os.path.join(model_dir, MODEL_FILENAME)
        self.epochs = epochs
        self.batch_size = batch_size
        self.learning_rate = learning_rate
        self.validation_split = validation_split
        self.seed = seed
        self.device = device or ("cuda" if torch.cuda.is_available() else "cpu")

        self._snapshot: Optional[ModelSnapshot] = None
        self._load_attempted = False

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _current(self) -> Optional[ModelSnapshot]:
        snapshot = self._snapshot
        if snapshot is None and not self._load_attempted:
            snapshot = self.load_model()
        return snapshot

    def is_model_trained(self) -> bool:
        return self._current() is not None

    def get_last_trained_at(self) -> Optional[datetime]:
        snapshot = self._current()
        return snapshot.trained_at if snapshot else None

    def get_total_training_examples(self) -> int:
        snapshot = self._current()
        return snapshot.total_training_examples if snapshot else 0

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    @staticmethod
    def _to_arrays(examples) -> tuple:
        inputs = np.stack([
            np.concatenate([np.asarray(e.user_vector, dtype=np.float32),
                            np.asarray(e.post_vector, dtype=np.float32)])
            for e in examples
        ])
        labels = np.asarray([float(e.label) for e in examples], dtype=np.float32)
        if inputs.shape[1] != MODEL_INPUT_DIM:
            raise ValueError(f"Input dimension mismatch: expected {MODEL_INPUT_DIM}, got {inputs.shape[1]}")
        return inputs, labels

    def _train_epoch(self, network, loader, optimizer, criterion) -> Dict[str, float]:
        network.train()
        total_loss, correct, seen = 0.0, 0, 0

        for xs, ys in loader:
            xs, ys = xs.to(self.device), ys.to(self.device)

            predictions = network(xs)
            loss = criterion(predictions, ys)

            optimizer.zero_grad()
            loss.backward()
            optimizer.step()

            total_loss += loss.item() * len(ys)
            correct += ((predictions >= 0.5).float() == ys).sum().item()
            seen += len(ys)

        return {"loss": total_loss / seen, "accuracy": correct / seen}

    @torch.no_grad()
    def _evaluate(self, network, inputs, labels, criterion) -> Dict[str, float]:
        network.eval()
        xs = torch.from_numpy(inputs).to(self.device)
        ys = torch.from_numpy(labels).to(self.device)

        predictions = network(xs)
        loss = criterion(predictions, ys).item()
        accuracy = ((predictions >= 0.5).float() == ys).float().mean().item()

        try:
            auc = roc_auc_score(labels, predictions.cpu().numpy())
        except ValueError:
            auc = 0.5  # Single-class validation split

        return {"val_loss": loss, "val_accuracy": accuracy, "val_auc": float(auc)}

    def train(self, examples: Sequence) -> Dict[str, List[float]]:
        """
        Train a fresh network on labeled examples and make it the active model.

        Args:
            examples: Objects with user_vector, post_vector and label

        Returns:
            Per-epoch history (loss, accuracy, val_loss, val_accuracy, val_auc)
        """
        if len(examples) == 0:
            raise ValueError("No training examples provided")

        inputs, labels = self._to_arrays(examples)

        generator = torch.Generator()
        if self.seed is not None:
            torch.manual_seed(self.seed)
            generator.manual_seed(self.seed)

        # Shuffle once, hold out the tail for validation
        order = torch.randperm(len(labels), generator=generator).numpy()
        inputs, labels = inputs[order], labels[order]
        val_size = int(len(labels) * self.validation_split)
        train_size = len(labels) - val_size
        if train_size == 0:
            train_size, val_size = len(labels), 0

        train_loader = DataLoader(
            TensorDataset(torch.from_numpy(inputs[:train_size]), torch.from_numpy(labels[:train_size])),
            batch_size=self.batch_size,
            shuffle=True,
            generator=generator,
        )
        val_inputs, val_labels = inputs[train_size:], labels[train_size:]

        network = RankingNet().to(self.device)
        optimizer = torch.optim.Adam(network.parameters(), lr=self.learning_rate)
        criterion = nn.BCELoss()

        total_params = sum(p.numel() for p in network.parameters())
        logger.info(f"Training ranking model ({total_params:,} parameters) on "
                    f"{train_size} examples, validating on {val_size}")

        history = {"loss": [], "accuracy": [], "val_loss": [], "val_accuracy": [], "val_auc": []}

        for epoch in range(self.epochs):
            metrics = self._train_epoch(network, train_loader, optimizer, criterion)
            if val_size:
                metrics.update(self._evaluate(network, val_inputs, val_labels, criterion))

            for key, value in metrics.items():
                history[key].append(value)

            logger.info(
                f"Epoch {epoch+1}/{self.epochs}: "
                f"Loss={metrics['loss']:.4f}, "
                f"Acc={metrics['accuracy']:.4f}"
                + (f", Val Loss={metrics['val_loss']:.4f}, Val AUC={metrics['val_auc']:.4f}" if val_size else "")
            )

        network = network.cpu().eval()
        snapshot = ModelSnapshot(
            network=network,
            trained_at=datetime.now(timezone.utc),
            total_training_examples=len(examples),
        )

        # Persist first so a failed write leaves the previous model active
        self.save_model(snapshot)
        self._snapshot = snapshot
        logger.info(f"Ranking model trained on {len(examples)} examples")

        return history

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def predict(self, user_vector, post_vectors) -> List[float]:
        """
        Score each candidate post for one user.

        Returns:
            One probability per post vector, in input order
        """
        snapshot = self._snapshot or self.load_model()
        if snapshot is None:
            raise ModelNotAvailableError("Ranking model not available: train it first")

        if len(post_vectors) == 0:
            return []

        user = np.asarray(user_vector, dtype=np.float32)
        posts = np.asarray(post_vectors, dtype=np.float32)
        inputs = np.hstack([np.tile(user, (len(posts), 1)), posts])

        with torch.no_grad():
            scores = snapshot.network(torch.from_numpy(inputs))
        return scores.numpy().astype(float).tolist()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save_model(self, snapshot: ModelSnapshot):
        """Write the checkpoint through a temp file so readers never see a partial file"""
        os.makedirs(self.model_dir, exist_ok=True)
        tmp_path = f"{self.model_path}.tmp"

        torch.save({
            "model_state_dict": snapshot.network.state_dict(),
            "input_dim": snapshot.network.input_dim,
            "hidden_layers": snapshot.network.hidden_layers,
            "dropout_rates": snapshot.network.dropout_rates,
            "trained_at": snapshot.trained_at.isoformat() if snapshot.trained_at else None,
            "total_training_examples": snapshot.total_training_examples,
        }, tmp_path)
        os.replace(tmp_path, self.model_path)

        logger.info(f"✅ Ranking model saved to {self.model_path}")

    def load_model(self) -> Optional[ModelSnapshot]:
        """Load the persisted checkpoint and make it resident; None if absent or unreadable"""
        self._load_attempted = True
        if not os.path.exists(self.model_path):
            return None

        try:
            checkpoint = torch.load(self.model_path, map_location="cpu")
            network = RankingNet(
                input_dim=checkpoint["input_dim"],
                hidden_layers=checkpoint["hidden_layers"],
                dropout_rates=checkpoint["dropout_rates"],
            )
            network.load_state_dict(checkpoint["model_state_dict"])
            network.eval()
        except (OSError, RuntimeError, KeyError, ValueError, EOFError, pickle.UnpicklingError) as e:
            logger.error(f"Failed to load ranking model from {self.model_path}: {e}")
            return None

        trained_at = checkpoint.get("trained_at")
        snapshot = ModelSnapshot(
            network=network,
            trained_at=datetime.fromisoformat(trained_at) if trained_at else None,
            total_training_examples=int(checkpoint.get("total_training_examples", 0)),
        )
        self._snapshot = snapshot
        logger.info(f"Ranking model loaded from {self.model_path}")
        return snapshot
