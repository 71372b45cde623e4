import os
import logging

import matplotlib.pyplot as plt
import seaborn as sns

# Configuration
RANDOM_STATE = 42
CV_FOLDS = 5
TRAIN_PROP = 0.8
AMES_CSV = os.environ.get('AMES_DATA_PATH', 'AmesHousing.csv')
PLOT_STYLE = 'seaborn-v0_8-whitegrid'


def configure_plotting():
    """Apply the plot style used by every figure in the notebook."""
    plt.style.use(PLOT_STYLE)
    sns.set_theme(style="whitegrid")
    sns.set_palette("husl")


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    if not logger.handlers:
        ch = logging.StreamHandler()
        ch.setLevel(logging.INFO)
        logger.addHandler(ch)
    return logger
