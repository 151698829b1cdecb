# examples/run_simple.py

import os
import logging

import matplotlib.pyplot as plt

from amm_ledger.models.market_model import MarketModel
from amm_ledger.utils.config_parser import load_config


def main():
    logging.basicConfig(level=logging.WARNING)

    # 1. Locate and load the YAML configuration
    script_dir = os.path.dirname(os.path.abspath(__file__))
    config = load_config(os.path.join(script_dir, "config_simple.yaml"))

    # 2. Instantiate the market and run it for the configured number of steps
    model = MarketModel(config)
    for _ in range(model.num_steps):
        model.step()

    # 3. Retrieve a DataFrame of per-pool reserves, invariant and price
    df = model.datacollector.get_model_vars_dataframe()

    print("\n=== Final pool state (last 5 steps) ===")
    print(df.tail())

    print("\n=== Ledger activity ===")
    for name in ("swaps", "deposits", "withdrawals"):
        print(f"{name}: {model.metrics[name]}")
    for reason, count in sorted(model.metrics["rejections"].items()):
        print(f"rejected ({reason}): {count}")

    # 4. Plot price and invariant growth for every pool
    fig, axes = plt.subplots(len(model.pool_pairs), 1, figsize=(8, 3 * len(model.pool_pairs)), squeeze=False)
    for ax1, (token_a, token_b) in zip(axes[:, 0], model.pool_pairs):
        label = f"{token_a}/{token_b}"
        ax1.plot(df.index, df[f"{label} price"], label="Price", color="tab:blue")
        ax1.set_ylabel("Price", color="tab:blue")
        ax1.tick_params(axis="y", labelcolor="tab:blue")

        ax2 = ax1.twinx()
        k = df[f"{label} k"].astype(float)
        ax2.plot(df.index, k / k.iloc[0], label="k / k0", color="tab:orange", linestyle="--")
        ax2.set_ylabel("k / k0", color="tab:orange")
        ax2.tick_params(axis="y", labelcolor="tab:orange")
        ax1.set_title(label)

    axes[-1, 0].set_xlabel("Time Step")
    fig.suptitle("Pool Price and Invariant Over Time")
    fig.tight_layout()
    plt.show()


if __name__ == "__main__":
    main()
