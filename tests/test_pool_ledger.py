import sys
import threading
from pathlib import Path
import pytest
from mesa import Model

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from amm_ledger.agents.token import TokenAgent
from amm_ledger.ledger.errors import (
    AMMError,
    IdenticalAssets,
    InsufficientAAmount,
    InsufficientAmount,
    InsufficientBAmount,
    InsufficientInputAmount,
    InsufficientLiquidity,
    InsufficientLiquidityBurned,
    InsufficientLiquidityMinted,
    InsufficientOutputAmount,
    LogicError,
    NoReserves,
    PairNotFound,
    TransferFailed,
    UnknownToken,
)
from amm_ledger.ledger.pool_ledger import (
    BURN_ADDRESS,
    DEFAULT_BOOTSTRAP_SHARES,
    MINIMUM_LIQUIDITY,
    MintPolicy,
    PoolLedger,
)
from amm_ledger.utils.math_helpers import PRICE_SCALE, get_amount_out, pair_key

A, B, C = "0xA", "0xB", "0xC"
FUNDS = 10 ** 30


def make_ledger(fee_bps_c=0, **kwargs):
    model = Model()
    tokens = {
        A: TokenAgent(model, A, "TKA"),
        B: TokenAgent(model, B, "TKB"),
        C: TokenAgent(model, C, "FEE", transfer_fee_bps=fee_bps_c),
    }
    return PoolLedger(tokens, **kwargs)


def fund(ledger, account, amount=FUNDS, approve=True):
    for token in ledger.tokens.values():
        token.mint(account, amount)
        if approve:
            token.approve(account, ledger.address, amount)


@pytest.fixture
def ledger():
    lg = make_ledger()
    fund(lg, "alice")
    fund(lg, "bob")
    return lg


@pytest.fixture
def seeded(ledger):
    ledger.add_liquidity("alice", A, B, 1000, 2000)
    return ledger


def test_first_deposit_mints_bootstrap_shares(ledger):
    amount_a, amount_b, liquidity = ledger.add_liquidity("alice", A, B, 1000, 2000)

    assert (amount_a, amount_b) == (1000, 2000)
    assert liquidity == DEFAULT_BOOTSTRAP_SHARES == 1000 * 10 ** 18
    assert ledger.get_reserves(A, B) == (1000, 2000)
    assert ledger.share_balance(A, B, "alice") == liquidity
    assert ledger.total_shares(B, A) == liquidity
    assert ledger.tokens[A].balance_of(ledger.address) == 1000
    assert ledger.tokens[B].balance_of("alice") == FUNDS - 2000


def test_reserves_follow_caller_order(seeded):
    assert seeded.get_reserves(A, B) == (1000, 2000)
    assert seeded.get_reserves(B, A) == (2000, 1000)
    pool = seeded.get_pool(B, A)
    assert (pool.token0, pool.token1) == (A, B)
    assert pool.key == pair_key(B, A)


def test_deposit_in_reverse_order_hits_same_pool(seeded):
    amount_b, amount_a, _ = seeded.add_liquidity("bob", B, A, 200, 1000)
    assert (amount_b, amount_a) == (200, 100)
    assert seeded.get_reserves(A, B) == (1100, 2200)
    assert len(seeded.pools) == 1


def test_unknown_pair_reads(ledger):
    assert ledger.get_reserves(A, B) == (0, 0)
    assert ledger.total_shares(A, B) == 0
    with pytest.raises(PairNotFound):
        ledger.get_pool(A, B)
    with pytest.raises(NoReserves):
        ledger.price(A, B)


def test_second_deposit_takes_optimal_b(seeded):
    amount_a, amount_b, liquidity = seeded.add_liquidity("bob", A, B, 500, 2000)

    assert (amount_a, amount_b) == (500, 1000)
    assert liquidity == DEFAULT_BOOTSTRAP_SHARES // 2
    assert seeded.get_reserves(A, B) == (1500, 3000)
    assert seeded.total_shares(A, B) == DEFAULT_BOOTSTRAP_SHARES * 3 // 2


def test_second_deposit_takes_optimal_a(seeded):
    amount_a, amount_b, liquidity = seeded.add_liquidity("bob", A, B, 500, 600)

    assert (amount_a, amount_b) == (300, 600)
    assert liquidity == DEFAULT_BOOTSTRAP_SHARES * 3 // 10


def test_deposit_slippage_bounds(seeded):
    with pytest.raises(InsufficientBAmount):
        seeded.add_liquidity("bob", A, B, 500, 2000, amount_b_min=1500)
    with pytest.raises(InsufficientAAmount):
        seeded.add_liquidity("bob", A, B, 500, 600, amount_a_min=400)

    assert seeded.get_reserves(A, B) == (1000, 2000)
    assert seeded.share_balance(A, B, "bob") == 0
    assert seeded.tokens[A].balance_of("bob") == FUNDS


def test_unreachable_branch_is_surfaced(seeded, monkeypatch):
    monkeypatch.setattr(
        "amm_ledger.ledger.pool_ledger.quote", lambda amount, reserve_in, reserve_out: amount * 10
    )
    with pytest.raises(LogicError):
        seeded.add_liquidity("bob", A, B, 500, 600)
    assert seeded.get_reserves(A, B) == (1000, 2000)


def test_zero_amounts_are_rejected_before_state(ledger):
    with pytest.raises(InsufficientAmount):
        ledger.add_liquidity("alice", A, B, 0, 1000)
    with pytest.raises(InsufficientAmount):
        ledger.add_liquidity("alice", A, B, 1000, 0)
    with pytest.raises(InsufficientInputAmount):
        ledger.swap("alice", A, 0, B)
    assert ledger.pools == {}


def test_deposit_too_small_to_mint():
    small = make_ledger(bootstrap_shares=10)
    fund(small, "alice")
    small.add_liquidity("alice", A, B, 1000, 1000)

    with pytest.raises(InsufficientLiquidityMinted):
        small.add_liquidity("alice", A, B, 50, 50)
    assert small.get_reserves(A, B) == (1000, 1000)
    assert small.total_shares(A, B) == 10


def test_identical_and_unknown_assets(ledger):
    with pytest.raises(IdenticalAssets):
        ledger.add_liquidity("alice", A, A, 10, 10)
    with pytest.raises(UnknownToken):
        ledger.add_liquidity("alice", A, "0xZ", 10, 10)


def test_missing_allowance_fails_without_side_effects(ledger):
    fund(ledger, "carol", approve=False)
    ledger.tokens[A].approve("carol", ledger.address, FUNDS)

    with pytest.raises(TransferFailed):
        ledger.add_liquidity("carol", A, B, 1000, 1000)

    assert ledger.pools == {}
    assert ledger.tokens[A].balance_of("carol") == FUNDS
    assert ledger.tokens[A].balance_of(ledger.address) == 0


def test_insufficient_balance_fails_before_transfer(seeded):
    with pytest.raises(TransferFailed):
        seeded.add_liquidity("nobody", A, B, 100, 200)
    assert seeded.get_reserves(A, B) == (1000, 2000)


def test_remove_all_liquidity_drains_pool(seeded):
    shares = seeded.share_balance(A, B, "alice")
    amount_a, amount_b = seeded.remove_liquidity("alice", A, B, shares)

    assert (amount_a, amount_b) == (1000, 2000)
    assert seeded.get_reserves(A, B) == (0, 0)
    assert seeded.total_shares(A, B) == 0
    assert seeded.tokens[A].balance_of("alice") == FUNDS
    assert seeded.tokens[B].balance_of("alice") == FUNDS

    # a drained pool is seeded again like a fresh one
    _, _, liquidity = seeded.add_liquidity("bob", A, B, 10, 90)
    assert liquidity == DEFAULT_BOOTSTRAP_SHARES
    assert seeded.get_reserves(A, B) == (10, 90)


def test_remove_liquidity_to_recipient_in_caller_order(seeded):
    shares = seeded.share_balance(A, B, "alice") // 4
    amount_b, amount_a = seeded.remove_liquidity("alice", B, A, shares, recipient="dave")

    assert (amount_a, amount_b) == (250, 500)
    assert seeded.tokens[A].balance_of("dave") == 250
    assert seeded.tokens[B].balance_of("dave") == 500
    assert seeded.get_reserves(A, B) == (750, 1500)


def test_remove_liquidity_failures_leave_state(seeded):
    shares = seeded.share_balance(A, B, "alice")
    with pytest.raises(InsufficientLiquidity):
        seeded.remove_liquidity("bob", A, B, 1)
    with pytest.raises(InsufficientLiquidity):
        seeded.remove_liquidity("alice", A, B, shares + 1)
    with pytest.raises(InsufficientLiquidityBurned):
        seeded.remove_liquidity("alice", A, B, 0)
    with pytest.raises(InsufficientAAmount):
        seeded.remove_liquidity("alice", A, B, shares, amount_a_min=1001)
    with pytest.raises(InsufficientBAmount):
        seeded.remove_liquidity("alice", A, B, shares, amount_b_min=2001)
    with pytest.raises(PairNotFound):
        seeded.remove_liquidity("alice", A, C, 1)

    assert seeded.get_reserves(A, B) == (1000, 2000)
    assert seeded.share_balance(A, B, "alice") == shares


def test_proportional_round_trip_never_gains(seeded):
    seeded.swap("bob", A, 37, B)
    reserve_a, reserve_b = seeded.get_reserves(A, B)
    deposit_a = 333
    deposit_b = seeded.quote(deposit_a, A, B)

    amount_a, amount_b, liquidity = seeded.add_liquidity("bob", A, B, deposit_a, deposit_b)
    back_a, back_b = seeded.remove_liquidity("bob", A, B, liquidity)

    assert back_a <= amount_a
    assert back_b <= amount_b
    new_a, new_b = seeded.get_reserves(A, B)
    assert new_a >= reserve_a and new_b >= reserve_b
    assert new_a * reserve_b == pytest.approx(new_b * reserve_a, rel=1e-2)


def test_swap_output_matches_formula():
    lg = make_ledger()
    fund(lg, "alice")
    fund(lg, "bob")
    lg.add_liquidity("alice", A, B, 10000, 10000)

    amount_out = lg.swap("bob", A, 1000, B)

    assert amount_out == 906
    assert lg.get_reserves(A, B) == (11000, 9094)
    assert lg.tokens[B].balance_of("bob") == FUNDS + 906
    assert lg.tokens[A].balance_of("bob") == FUNDS - 1000


def test_swap_preview_and_recipient(seeded):
    preview = seeded.get_amount_out(B, 500, A)
    amount_out = seeded.swap("bob", B, 500, A, amount_out_min=preview, recipient="erin")

    assert amount_out == preview == get_amount_out(500, 2000, 1000)
    assert seeded.tokens[A].balance_of("erin") == amount_out
    assert seeded.get_reserves(B, A) == (2500, 1000 - amount_out)


def test_swap_slippage_rejection_leaves_reserves(seeded):
    expected = seeded.get_amount_out(A, 100, B)
    with pytest.raises(InsufficientOutputAmount):
        seeded.swap("bob", A, 100, B, amount_out_min=expected + 1)

    assert seeded.get_reserves(A, B) == (1000, 2000)
    assert seeded.tokens[A].balance_of("bob") == FUNDS


def test_swap_rejects_dust_and_missing_pools(seeded):
    with pytest.raises(InsufficientOutputAmount):
        seeded.swap("bob", B, 1, A)
    with pytest.raises(InsufficientLiquidity):
        seeded.swap("bob", A, 100, C)
    with pytest.raises(InsufficientLiquidity):
        seeded.swap("bob", A, 100, A)
    seeded.create_pair(B, C)
    with pytest.raises(InsufficientLiquidity):
        seeded.swap("bob", B, 100, C)


def test_swaps_never_decrease_invariant(seeded):
    k = seeded.get_pool(A, B).get_k()
    for token_in, token_out, amount in [(A, B, 10), (B, A, 250), (A, B, 999), (B, A, 3)]:
        seeded.swap("bob", token_in, amount, token_out)
        new_k = seeded.get_pool(A, B).get_k()
        assert new_k > k
        k = new_k


def test_price_is_scaled_ratio(seeded):
    assert seeded.price(A, B) == 2 * PRICE_SCALE
    assert seeded.price(B, A) == PRICE_SCALE // 2
    seeded.swap("bob", A, 123, B)
    reserve_a, reserve_b = seeded.get_reserves(A, B)
    assert seeded.price(A, B) == reserve_b * PRICE_SCALE // reserve_a
    assert seeded.price(A, B) * seeded.price(B, A) == pytest.approx(PRICE_SCALE ** 2, rel=1e-3)


def test_geometric_mint_locks_minimum_liquidity():
    lg = make_ledger(mint_policy="geometric")
    fund(lg, "alice")
    _, _, liquidity = lg.add_liquidity("alice", A, B, 4000, 9000)

    assert lg.mint_policy is MintPolicy.GEOMETRIC
    assert liquidity == 6000 - MINIMUM_LIQUIDITY
    assert lg.share_balance(A, B, BURN_ADDRESS) == MINIMUM_LIQUIDITY
    assert lg.total_shares(A, B) == 6000

    lg.remove_liquidity("alice", A, B, liquidity)
    assert lg.total_shares(A, B) == MINIMUM_LIQUIDITY
    assert lg.get_reserves(A, B) == (667, 1500)


def test_geometric_mint_rejects_tiny_seed():
    lg = make_ledger(mint_policy=MintPolicy.GEOMETRIC)
    fund(lg, "alice")
    with pytest.raises(InsufficientLiquidityMinted):
        lg.add_liquidity("alice", A, B, 1000, 1000)
    assert lg.pools == {}
    assert lg.tokens[A].balance_of("alice") == FUNDS


def test_product_mint_policy():
    lg = make_ledger(mint_policy="product")
    fund(lg, "alice")
    _, _, liquidity = lg.add_liquidity("alice", A, B, 2 * 10 ** 18, 3 * 10 ** 18)
    assert liquidity == 6 * 10 ** 18


def test_invalid_ledger_settings():
    with pytest.raises(ValueError):
        make_ledger(mint_policy="sqrt")
    with pytest.raises(ValueError):
        make_ledger(bootstrap_shares=0)


def test_pools_sharing_an_asset_keep_separate_reserves(seeded):
    seeded.add_liquidity("bob", A, C, 500, 700)

    assert seeded.get_reserves(A, B) == (1000, 2000)
    assert seeded.get_reserves(A, C) == (500, 700)
    assert seeded.tokens[A].balance_of(seeded.address) == 1500


def test_fee_on_transfer_reserves_track_custody():
    lg = make_ledger(fee_bps_c=100)
    fund(lg, "alice")
    fund(lg, "bob")

    amount_a, amount_c, _ = lg.add_liquidity("alice", A, C, 10000, 10000)
    assert (amount_a, amount_c) == (10000, 10000)
    assert lg.get_reserves(A, C) == (10000, 9900)
    assert lg.tokens[C].balance_of(lg.address) == 9900

    amount_out = lg.swap("bob", C, 1000, A)
    assert amount_out == get_amount_out(990, 9900, 10000)
    assert lg.get_reserves(C, A) == (9900 + 990, 10000 - amount_out)
    assert lg.tokens[C].balance_of(lg.address) == 9900 + 990


def test_fee_on_transfer_slippage_fails_before_transfer():
    lg = make_ledger(fee_bps_c=100)
    fund(lg, "alice")
    fund(lg, "bob")
    lg.add_liquidity("alice", A, C, 10000, 10000)
    nominal = lg.get_amount_out(C, 1000, A)

    with pytest.raises(InsufficientOutputAmount):
        lg.swap("bob", C, 1000, A, amount_out_min=nominal)
    assert lg.get_reserves(A, C) == (10000, 9900)
    assert lg.tokens[C].balance_of(lg.address) == 9900
    # no fee was charged, since nothing moved
    assert lg.tokens[C].balance_of("bob") == FUNDS


def test_unadvertised_transfer_fee_is_refunded_after_pull(monkeypatch):
    lg = make_ledger(fee_bps_c=100)
    fund(lg, "alice")
    fund(lg, "bob")
    lg.add_liquidity("alice", A, C, 10000, 10000)
    monkeypatch.setattr(lg, "_expected_receipt", lambda custody, amount: amount)
    nominal = lg.get_amount_out(C, 1000, A)

    with pytest.raises(InsufficientOutputAmount):
        lg.swap("bob", C, 1000, A, amount_out_min=nominal)
    assert lg.get_reserves(A, C) == (10000, 9900)
    assert lg.tokens[C].balance_of(lg.address) == 9900
    # 10 burned on the pull, 9 more on the refund of the 990 received
    assert lg.tokens[C].balance_of("bob") == FUNDS - 19


def test_fee_on_transfer_deposit_mints_on_received_amounts():
    model = Model()
    tokens = {
        A: TokenAgent(model, A, "FA", transfer_fee_bps=100),
        C: TokenAgent(model, C, "FC", transfer_fee_bps=100),
    }
    lg = PoolLedger(tokens)
    fund(lg, "alice")
    fund(lg, "bob")
    lg.add_liquidity("alice", A, C, 10000, 10000)
    assert lg.get_reserves(A, C) == (9900, 9900)

    amount_a, amount_c, liquidity = lg.add_liquidity("bob", A, C, 9900, 9900)

    assert (amount_a, amount_c) == (9900, 9900)
    assert liquidity == DEFAULT_BOOTSTRAP_SHARES * 9801 // 9900
    assert lg.get_reserves(A, C) == (19701, 19701)

    total = lg.total_shares(A, C)
    reserve_a, reserve_c = lg.get_reserves(A, C)
    assert liquidity * reserve_a // total <= 9801
    assert liquidity * reserve_c // total <= 9801
    alice = lg.share_balance(A, C, "alice")
    assert alice * reserve_a // total >= 9900


def test_deposit_minting_nothing_after_fee_is_refunded(monkeypatch):
    lg = make_ledger(fee_bps_c=5000, bootstrap_shares=10)
    fund(lg, "alice")
    lg.add_liquidity("alice", A, C, 1000, 1000)
    assert lg.get_reserves(A, C) == (1000, 500)

    with pytest.raises(InsufficientLiquidityMinted):
        lg.add_liquidity("alice", A, C, 100, 200)
    assert lg.tokens[C].balance_of("alice") == FUNDS - 1000

    # a service whose fee is only seen once the tokens arrive
    monkeypatch.setattr(lg, "_expected_receipt", lambda custody, amount: amount)
    with pytest.raises(InsufficientLiquidityMinted):
        lg.add_liquidity("alice", A, C, 100, 200)

    assert lg.get_reserves(A, C) == (1000, 500)
    assert lg.total_shares(A, C) == 10
    assert lg.tokens[A].balance_of(lg.address) == 1000
    assert lg.tokens[C].balance_of(lg.address) == 500
    assert lg.tokens[A].balance_of("alice") == FUNDS - 1000


def test_hooks_fire_after_commit(ledger):
    events = []
    ledger.on_deposit = lambda lg, provider, a, b, shares: events.append(("deposit", provider, a, b))
    ledger.on_swap = lambda lg, trader, t_in, a_in, t_out, a_out: events.append(("swap", trader, a_in, a_out))
    ledger.on_withdraw = lambda lg, provider, a, b: events.append(("withdraw", provider, a, b))

    ledger.add_liquidity("alice", A, B, 10000, 10000)
    ledger.swap("bob", A, 1000, B)
    with pytest.raises(AMMError):
        ledger.swap("bob", A, 1000, B, amount_out_min=10 ** 6)
    ledger.remove_liquidity("alice", A, B, ledger.share_balance(A, B, "alice"))

    assert events == [
        ("deposit", "alice", 10000, 10000),
        ("swap", "bob", 1000, 906),
        ("withdraw", "alice", 11000, 9094),
    ]


def test_independent_ledgers_do_not_share_pools():
    first = make_ledger()
    second = make_ledger()
    fund(first, "alice")
    first.add_liquidity("alice", A, B, 100, 100)
    assert second.get_reserves(A, B) == (0, 0)


def test_concurrent_swaps_keep_custody_and_reserves_in_sync():
    lg = make_ledger()
    fund(lg, "alice")
    lg.add_liquidity("alice", A, B, 10 ** 12, 10 ** 12)
    traders = [f"trader-{i}" for i in range(8)]
    for trader in traders:
        fund(lg, trader)
    k_before = lg.get_pool(A, B).get_k()
    errors = []

    def run(trader, forward):
        for i in range(50):
            token_in, token_out = (A, B) if (i % 2 == 0) == forward else (B, A)
            try:
                lg.swap(trader, token_in, 10 ** 6 + i, token_out)
            except AMMError as exc:
                errors.append(exc)

    threads = [threading.Thread(target=run, args=(t, n % 2 == 0)) for n, t in enumerate(traders)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    reserve_a, reserve_b = lg.get_reserves(A, B)
    assert lg.tokens[A].balance_of(lg.address) == reserve_a
    assert lg.tokens[B].balance_of(lg.address) == reserve_b
    assert reserve_a * reserve_b > k_before
