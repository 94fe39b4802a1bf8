"""
Tokko Orders — 注文ライフサイクル & イベントファンアウト

注文の作成・状態遷移・2段階キャンセル(ユーザー申請 → 管理者確定)と、
各イベントを複数のシンク(台帳 CSV / チャット通知 / メトリクス)へ
並列に配信するコアサービス。
"""

__version__ = "0.1.0"
