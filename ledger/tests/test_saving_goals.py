import unittest
from decimal import Decimal

from ledger.saving_goals import (
    SavingGoal,
    contribute,
    goal_progress,
    goals_for_account,
    remaining_amount,
)


class SavingGoalTests(unittest.TestCase):
    def setUp(self) -> None:
        self.goal = SavingGoal(
            id=1,
            account_id=3,
            label="Trip",
            target_amount=Decimal("200"),
            current_amount=Decimal("50"),
        )

    def test_progress_is_percent_of_target(self) -> None:
        self.assertEqual(goal_progress(self.goal), Decimal("25"))
        self.assertEqual(remaining_amount(self.goal), Decimal("150"))

    def test_progress_caps_at_100(self) -> None:
        funded = contribute(self.goal, Decimal("500"))

        self.assertEqual(funded.current_amount, Decimal("550"))
        self.assertEqual(goal_progress(funded), Decimal("100"))
        self.assertEqual(remaining_amount(funded), Decimal("0"))

    def test_zero_target_has_zero_progress(self) -> None:
        goal = SavingGoal(id=2, account_id=3, label="Someday", target_amount=Decimal("0"))

        self.assertEqual(goal_progress(goal), Decimal("0"))

    def test_zero_contribution_returns_same_goal(self) -> None:
        self.assertIs(contribute(self.goal, Decimal("0")), self.goal)

    def test_goals_for_account(self) -> None:
        other = SavingGoal(id=2, account_id=4, label="Car", target_amount=Decimal("10"))

        self.assertEqual(goals_for_account([self.goal, other], 4), [other])


if __name__ == "__main__":
    unittest.main()
