from datetime import date

import pandas as pd
from sklearn.linear_model import LinearRegression

from models import Category, Transaction, db

NEAR_BUDGET_RATIO = 0.9


def _query_df(year=None):
    # Build a DataFrame of transactions with their RKAP category
    q = db.session.query(Transaction.date, Transaction.amount, Category.name, Category.budget) \
        .join(Category, Transaction.category_id == Category.id)
    rows = q.all()
    if not rows:
        return pd.DataFrame(columns=['date', 'amount', 'category', 'budget'])
    df = pd.DataFrame([tuple(r) for r in rows], columns=['date', 'amount', 'category', 'budget'])
    df['date'] = pd.to_datetime(df['date'])
    if year:
        df = df[df['date'].dt.year == year]
    return df


def _monthly_expenses(df):
    expenses = df[df['amount'] < 0].copy()
    if expenses.empty:
        return pd.Series(dtype=float)
    expenses['ym'] = expenses['date'].dt.to_period('M')
    return expenses.groupby('ym')['amount'].sum().abs().sort_index()


def predict_next_month_expense():
    monthly = _monthly_expenses(_query_df())
    if monthly.empty:
        return 0
    if len(monthly) < 2:
        # Not enough data to fit
        return int(monthly.iloc[-1])
    # Months as an integer index so gaps between months keep their distance
    first = monthly.index[0]
    X = [[(p - first).n] for p in monthly.index]
    model = LinearRegression().fit(X, monthly.values)
    next_idx = (monthly.index[-1] - first).n + 1
    pred = float(model.predict([[next_idx]])[0])
    return max(int(round(pred)), 0)


def generate_recommendations(year=None):
    year = year or date.today().year
    df = _query_df(year)
    recs = []
    if df.empty:
        recs.append(f'No transactions recorded for {year} yet.')
        return recs

    total_income = df[df['amount'] > 0]['amount'].sum()
    total_expense = -df[df['amount'] < 0]['amount'].sum()
    if total_income > 0:
        savings_rate = max((total_income - total_expense) / total_income, 0)
        recs.append(f'Income retained after expenses in {year}: {savings_rate*100:.1f}%.')
    else:
        recs.append(f'No income recorded for {year}.')

    # Budget realization per RKAP line
    spent = df[df['amount'] < 0].groupby(['category', 'budget'])['amount'].sum().abs()
    for (category, budget), value in spent.sort_values(ascending=False).items():
        if budget <= 0:
            continue
        ratio = value / budget
        if ratio > 1:
            recs.append(f'"{category}" has exceeded its budget: {value:,.0f} of {budget:,.0f} ({ratio*100:.0f}%).')
        elif ratio >= NEAR_BUDGET_RATIO:
            recs.append(f'"{category}" is close to its budget: {value:,.0f} of {budget:,.0f} ({ratio*100:.0f}%).')

    monthly = _monthly_expenses(df)
    if len(monthly) >= 2:
        last = monthly.iloc[-1]
        prev_avg = monthly.iloc[:-1].mean()
        if last > 1.2 * prev_avg:
            recs.append("Last month's expenses exceeded the previous monthly average by 20%+.")
    return recs
