import unittest

from realty_agent.realty_core.lead_scoring import (
    BASE_SCORE,
    PriorityTier,
    matched_signals,
    priority_tier,
    score_lead,
)


class LeadScoringTests(unittest.TestCase):
    def test_empty_history_scores_base(self) -> None:
        self.assertEqual(score_lead([]), BASE_SCORE)

    def test_volume_bonus_tiers(self) -> None:
        self.assertEqual(score_lead(["hello"] * 2), 20)
        self.assertEqual(score_lead(["hello"] * 3), 30)
        self.assertEqual(score_lead(["hello"] * 6), 35)
        self.assertEqual(score_lead(["hello"] * 11), 45)

    def test_buying_and_urgency_keywords(self) -> None:
        # buy (+10), condo (+10), asap (+15)
        self.assertEqual(score_lead(["I want to buy a condo asap"]), 55)

    def test_each_keyword_counts_once(self) -> None:
        self.assertEqual(score_lead(["price", "price", "price"]), 20 + 10 + 10)

    def test_only_last_five_messages_are_scanned(self) -> None:
        history = ["urgent"] + ["hello"] * 5
        # Volume bonus for six messages only; "urgent" fell out of the window.
        self.assertEqual(score_lead(history), 20 + 15)

    def test_total_count_drives_volume_bonus_for_recent_slice(self) -> None:
        recent = ["hello"] * 5
        self.assertEqual(score_lead(recent, message_count=12), 20 + 25)
        self.assertEqual(score_lead(recent, message_count=12), score_lead(["hello"] * 12))

    def test_accepts_message_dicts(self) -> None:
        self.assertEqual(score_lead([{"text": "what's the price?"}, {"text": None}]), 30)

    def test_buying_signals_match_suffixes_but_urgency_is_whole_word(self) -> None:
        self.assertIn("buy", matched_signals("We are buying soon"))
        self.assertIn("approve", matched_signals("loan approved"))
        self.assertNotIn("now", matched_signals("I know the area"))
        self.assertNotIn("buy", matched_signals("but maybe later"))

    def test_score_is_capped_at_100(self) -> None:
        text = "buy purchase viewing schedule interested price budget loan approve condo property apartment now urgent asap"
        self.assertEqual(score_lead([text] * 12), 100)

    def test_priority_tier_thresholds(self) -> None:
        self.assertEqual(priority_tier(70), PriorityTier.HOT)
        self.assertEqual(priority_tier(69), PriorityTier.WARM)
        self.assertEqual(priority_tier(40), PriorityTier.WARM)
        self.assertEqual(priority_tier(39), PriorityTier.COLD)

    def test_score_never_drops_as_messages_accumulate(self) -> None:
        for text in ["hello", "interested in a condo", "need to buy asap, loan approved"]:
            scores = [score_lead([text] * count) for count in range(0, 15)]
            self.assertEqual(scores, sorted(scores))
            self.assertTrue(all(0 <= score <= 100 for score in scores))


if __name__ == "__main__":
    unittest.main()
