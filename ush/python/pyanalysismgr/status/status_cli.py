#!/usr/bin/env python3

import argparse
from datetime import datetime

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402

from pyanalysismgr.status.broker_logger import BrokerStatusLogger  # noqa: E402


# List managers and their latest state
# ----------------------------------------------------------------
# python3 status_cli.py --db broker_status.db managers
#
# Print the stored rows for one manager
# ----------------------------------------------------------------
# python3 status_cli.py --db broker_status.db show --mgr Pub-12-1 --limit 20
#
# Plot progress and core usage for a job
# ----------------------------------------------------------------
# python3 status_cli.py --db broker_status.db plot-progress --job 2201934 --output progress.png


# ------------------------------------------------------------
# Helper function: pretty table
# ------------------------------------------------------------
def print_table(title, headers, rows):
    print("\n" + title)
    print("=" * len(title))

    if not rows:
        print("(no rows)")
        return

    print(" | ".join(headers))
    print("-" * 40)

    for r in rows:
        print(" | ".join(str(value) for value in r))


# ------------------------------------------------------------
# Class-based CLI for the broker status database
# ------------------------------------------------------------
class StatusCLI:
    def __init__(self, argv=None):
        self.parser = argparse.ArgumentParser(description="Analysis manager status CLI")
        self.parser.add_argument("--db", default="broker_status.db", help="Broker status SQLite database")
        sub = self.parser.add_subparsers(dest="command", required=True)

        # managers
        sub.add_parser("managers", help="Latest status of each manager")

        # show
        p_show = sub.add_parser("show", help="Recent status rows for a manager")
        p_show.add_argument("--mgr", required=True)
        p_show.add_argument("--limit", type=int, default=20)

        # plot: progress and core usage for one job
        p_plot = sub.add_parser("plot-progress", help="Plot progress and core usage for a job")
        p_plot.add_argument("--job", type=int, required=True)
        p_plot.add_argument("--output", help="Save plot to PNG")

        self.args = self.parser.parse_args(argv)
        self.db = BrokerStatusLogger(self.args.db)

    # --------------------------------------------------------
    def run(self):
        args = self.args

        if args.command == "managers":
            self.print_managers()

        elif args.command == "show":
            self.print_manager_rows(args.mgr, args.limit)

        elif args.command == "plot-progress":
            self.plot_progress(args.job, output=args.output)

    # --------------------------------------------------------
    def print_managers(self):
        rows = self.db.execute_query("""
            SELECT s.mgr_name, s.mgr_status, s.task_status, s.job, s.progress, s.last_update
            FROM manager_status s
            JOIN (SELECT mgr_name, MAX(id) AS id FROM manager_status GROUP BY mgr_name) latest
              ON latest.id = s.id
            ORDER BY s.mgr_name
        """)
        print_table("Managers", ["mgr_name", "mgr_status", "task_status", "job", "progress", "last_update"], rows)

    # --------------------------------------------------------
    def print_manager_rows(self, mgr_name, limit):
        rows = self.db.execute_query("""
            SELECT last_update, mgr_status, task_status, task_detail_status, job, job_step,
                   progress, most_recent_log_message
            FROM manager_status
            WHERE mgr_name = ?
            ORDER BY id DESC
            LIMIT ?
        """, (mgr_name, limit))
        print_table(f"Status history for {mgr_name}",
                    ["last_update", "mgr_status", "task_status", "detail", "job", "step", "progress", "log_message"],
                    rows)

    # helper for output argument
    def _finalize_plot(self, output):
        if output:
            plt.savefig(output, dpi=150, bbox_inches="tight")
            print(f"Plot saved to: {output}")
        else:
            plt.show()
        plt.close()

    def plot_progress(self, job, output=None):
        rows = self.db.execute_query("""
            SELECT last_update, progress, prog_runner_core_usage
            FROM manager_status
            WHERE job = ?
            ORDER BY last_update
        """, (job,))

        if not rows:
            print("No data.")
            return

        x = [datetime.fromisoformat(r[0]) for r in rows]
        progress = np.array([r[1] for r in rows], dtype=float)
        core_usage = np.array([r[2] for r in rows], dtype=float)

        fig, ax1 = plt.subplots(figsize=(12, 5))
        colors = plt.rcParams['axes.prop_cycle'].by_key()['color']

        ax1.plot(x, progress, color=colors[0], marker="o", label="progress (%)")
        ax1.set_ylabel("Progress (%)")
        ax1.set_ylim(0, 100)

        ax2 = ax1.twinx()
        ax2.plot(x, core_usage, color=colors[1], linestyle="--", label="core usage")
        if np.any(core_usage > 0):
            ax2.axhline(np.mean(core_usage[core_usage > 0]), color=colors[1], alpha=0.4)
        ax2.set_ylabel("Cores")

        ax1.set_title(f"Job {job}: progress and core usage")
        ax1.set_xlabel("Last update (UTC)")
        fig.autofmt_xdate()
        fig.legend(loc="upper left", bbox_to_anchor=(1.02, 1.0))
        fig.tight_layout()

        self._finalize_plot(output)


def main(argv=None):
    StatusCLI(argv).run()


# ------------------------------------------------------------
# Run the CLI
# ------------------------------------------------------------
if __name__ == "__main__":
    main()
