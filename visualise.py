import os
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
import argparse
import base64
from io import BytesIO
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from cbz_ledger import DELIMITER, LEDGER_FILE

# --- Initial Setup ---
console = Console()
plt.style.use('seaborn-v0_8-whitegrid')

# --- Data Loading ---
def load_ledger(ledger_path=LEDGER_FILE):
    """Loads the ledger into a DataFrame with derived saving columns. Returns None if unreadable."""
    if not os.path.exists(ledger_path):
        console.print(f"[yellow]Warning: Ledger file not found at '{ledger_path}'[/yellow]")
        return None
    try:
        df = pd.read_csv(ledger_path, sep=DELIMITER, dtype={'path': str, 'status': str, 'processed_at': str})
    except (pd.errors.ParserError, pd.errors.EmptyDataError, OSError) as e:
        console.print(f"[red]Error reading ledger '{ledger_path}': {e}[/red]")
        return None
    console.print(f"[green]Successfully loaded {len(df)} records from '{ledger_path}'[/green]")

    df['original_size'] = pd.to_numeric(df['original_size'], errors='coerce').fillna(0).astype('int64')
    df['optimized_size'] = pd.to_numeric(df['optimized_size'], errors='coerce').fillna(0).astype('int64')
    success = df['status'] == 'success'
    df['bytes_saved'] = (df['original_size'] - df['optimized_size']).where(success, 0)
    df['percent_saved'] = (df['bytes_saved'] / df['original_size'].where(df['original_size'] > 0)) * 100
    df['percent_saved'] = df['percent_saved'].fillna(0.0)
    return df


def split_by_status(df):
    """Returns (optimized, failed) frames."""
    if df is None or df.empty:
        return df, df
    return df[df['status'] == 'success'].copy(), df[df['status'] == 'fail'].copy()

# --- HTML Generation ---
def fig_to_base64(fig):
    """Converts a Matplotlib figure to a Base64 encoded string."""
    buf = BytesIO()
    fig.savefig(buf, format='png', bbox_inches='tight')
    buf.seek(0)
    return base64.b64encode(buf.getvalue()).decode('utf-8')

def generate_html_report(stats_html_list, plot_html_parts):
    """Generates the full HTML report string from parts."""
    stats_section = "".join(stats_html_list)
    plots_section = "".join(plot_html_parts)

    style = """
    <style>
        body { font-family: sans-serif; margin: 2em; background-color: #f0f0f0; color: #333; }
        h1, h2 { color: #1e1e1e; border-bottom: 2px solid #ccc; padding-bottom: 5px; }
        .container { max-width: 1200px; margin: auto; background-color: white; padding: 1em 2em; box-shadow: 0 0 15px rgba(0,0,0,0.1); border-radius: 8px;}
        .stats-grid { display: grid; grid-template-columns: repeat(auto-fit, minmax(400px, 1fr)); gap: 1em; }
        .plot-grid { display: grid; grid-template-columns: repeat(auto-fit, minmax(500px, 1fr)); gap: 2em; align-items: start; }
        .plot { text-align: center; margin-bottom: 2em; padding: 1em; background-color: #f9f9f9; border-radius: 5px;}
        .plot img { max-width: 100%; height: auto; }
    </style>
    """
    body = f"""
    <div class="container">
        <h1>Comic Archive Optimization Report</h1>
        <h2>Statistics</h2>
        <div class="stats-grid">
            {stats_section}
        </div>
        <h2>Visualizations</h2>
        <div class="plot-grid">
            {plots_section}
        </div>
    </div>
    """
    return f"<!DOCTYPE html><html><head><title>Comic Archive Optimization Report</title>{style}</head><body>{body}</body></html>"


# --- Data Analysis and Plotting ---
def status_counts(df):
    counts = {status: 0 for status in ('success', 'fail', 'ongoing', 'pending')}
    if df is not None and not df.empty:
        for status, count in df['status'].value_counts().items():
            counts[status] = int(count)
    return counts


def get_statistics_tables(df):
    """Returns a list of Rich tables with ledger statistics."""
    tables = []
    if df is None or df.empty:
        return tables

    status_table = Table(title="Ledger Status", title_style="bold magenta")
    status_table.add_column("Status", style="cyan"); status_table.add_column("Archives", style="bold green")
    for status, count in status_counts(df).items():
        status_table.add_row(status, str(count))
    tables.append(status_table)

    optimized_df, _ = split_by_status(df)
    if not optimized_df.empty:
        total_saved_gb = optimized_df['bytes_saved'].sum() / (1024**3)
        stats_table = Table(title="Optimization Summary", title_style="bold magenta")
        stats_table.add_column("Metric", style="cyan"); stats_table.add_column("Value", style="bold green")
        stats_table.add_row("Total Space Saved", f"{total_saved_gb:.3f} GB")
        stats_table.add_row("Average Saving Percentage", f"{optimized_df['percent_saved'].mean():.2f}%")
        stats_table.add_row("Median Saving Percentage", f"{optimized_df['percent_saved'].median():.2f}%")
        stats_table.add_row("Best Saving Percentage", f"{optimized_df['percent_saved'].max():.2f}%")
        tables.append(stats_table)

        best_table = Table(title="Top 5 Best Optimizations (by % Saved)", title_style="bold magenta")
        best_table.add_column("File Path", style="green", no_wrap=True); best_table.add_column("% Saved", style="bold green")
        for _, row in optimized_df.nlargest(5, 'percent_saved').iterrows():
            best_table.add_row(escape(row['path']), f"{row['percent_saved']:.2f}%")
        tables.append(best_table)

    return tables


def plot_savings_distribution(df, to_html=False):
    if df.empty or 'percent_saved' not in df.columns: return None

    fig, ax = plt.subplots(figsize=(10, 6))
    df['percent_saved'].plot(kind='hist', bins=30, color='skyblue', ec='black', ax=ax)
    ax.set_title('Distribution of Saving Percentages', fontsize=16)
    ax.set_xlabel('Saving Percentage (%)', fontsize=12); ax.set_ylabel('Number of Archives', fontsize=12)
    mean_val = df['percent_saved'].mean()
    ax.axvline(mean_val, color='red', linestyle='dashed', linewidth=2, label=f"Mean: {mean_val:.2f}%")
    ax.legend()
    plt.tight_layout()
    if to_html: return fig
    console.print("\n[bold]Displaying plot 1: Distribution of Saving Percentages...[/bold]"); plt.show()
    plt.close(fig)

def plot_size_vs_savings(df, to_html=False):
    if df.empty or 'percent_saved' not in df.columns: return None
    df['original_size_mb'] = df['original_size'] / (1024 * 1024)
    fig, ax = plt.subplots(figsize=(10, 6))
    ax.scatter(df['original_size_mb'], df['percent_saved'], alpha=0.5)
    ax.set_title('Original File Size vs. Saving Percentage', fontsize=16)
    ax.set_xlabel('Original File Size (MB)', fontsize=12); ax.set_ylabel('Saving Percentage (%)', fontsize=12)
    ax.set_xscale('log')
    plt.tight_layout()
    if to_html: return fig
    console.print("[bold]Displaying plot 2: Original Size vs. Saving Percentage...[/bold]"); plt.show()
    plt.close(fig)

def plot_summary_pie(counts, to_html=False):
    labels = [status for status, count in counts.items() if count > 0]
    if not labels: return None
    palette = {'success': 'lightgreen', 'fail': 'lightcoral', 'ongoing': 'khaki', 'pending': 'lightgrey'}
    fig, ax = plt.subplots(figsize=(8, 8))
    ax.pie([counts[label] for label in labels], labels=labels, colors=[palette[label] for label in labels],
           autopct='%1.1f%%', shadow=True, startangle=140)
    ax.axis('equal')
    ax.set_title('Overall Summary: Archives by Ledger Status', fontsize=16)
    if to_html: return fig
    console.print("[bold]Displaying plot 3: Overall Summary Pie Chart...[/bold]"); plt.show()
    plt.close(fig)

def plot_cumulative_savings(df, to_html=False):
    if df.empty or 'bytes_saved' not in df.columns or 'processed_at' not in df.columns: return None
    df['processed_at'] = pd.to_datetime(df['processed_at'], errors='coerce')
    df = df.dropna(subset=['processed_at']).sort_values(by='processed_at')
    if df.empty: return None
    df['cumulative_saved_gb'] = df['bytes_saved'].cumsum() / (1024**3)
    fig, ax = plt.subplots(figsize=(12, 6))
    ax.plot(df['processed_at'], df['cumulative_saved_gb'], marker='.', linestyle='-', markersize=4)
    ax.set_title('Cumulative Space Saved Over Time', fontsize=16)
    ax.set_xlabel('Date of Optimization', fontsize=12); ax.set_ylabel('Cumulative Space Saved (GB)', fontsize=12)
    ax.grid(True, which="both", ls="--")
    plt.tight_layout()
    if to_html: return fig
    console.print("[bold]Displaying plot 4: Cumulative Space Saved...[/bold]"); plt.show()
    plt.close(fig)

def plot_size_distribution(df, to_html=False):
    if df.empty or 'original_size' not in df.columns or 'optimized_size' not in df.columns: return None
    df_to_plot = df.copy()
    df_to_plot['original_size_mb'] = df_to_plot['original_size'] / (1024 * 1024)
    df_to_plot['optimized_size_mb'] = df_to_plot['optimized_size'] / (1024 * 1024)
    fig, ax = plt.subplots(figsize=(8, 7))
    sns.boxplot(data=df_to_plot[['original_size_mb', 'optimized_size_mb']], palette="Set2", ax=ax)
    ax.set_title('Distribution of Original vs. Optimized Archive Sizes', fontsize=16)
    ax.set_ylabel('File Size (MB)', fontsize=12)
    plt.tight_layout()
    if to_html: return fig
    console.print("[bold]Displaying plot 5: Original vs. Optimized Size Distribution...[/bold]"); plt.show()
    plt.close(fig)


def build_html_report(df):
    """Renders the statistics tables and plots of ``df`` into one HTML page."""
    stats_html_parts = []
    for table in get_statistics_tables(df):
        capture_console = Console(record=True, width=120)
        capture_console.print(table)
        stats_html_parts.append(capture_console.export_html(inline_styles=True))

    plot_html_parts = []
    counts = status_counts(df)
    optimized_df, _ = split_by_status(df)
    plot_functions = [lambda _df, to_html: plot_summary_pie(counts, to_html)]
    if optimized_df is not None and not optimized_df.empty:
        plot_functions += [plot_savings_distribution, plot_size_vs_savings, plot_cumulative_savings, plot_size_distribution]
    for i, plot_func in enumerate(plot_functions):
        fig = plot_func(optimized_df.copy(), to_html=True)
        if fig:
            b64_img = fig_to_base64(fig)
            plot_html_parts.append(f'<div class="plot"><img src="data:image/png;base64,{b64_img}" alt="Plot {i+1}"></div>')
            plt.close(fig)
    return generate_html_report(stats_html_parts, plot_html_parts)


def main(argv=None):
    """Main function to run the analysis."""
    parser = argparse.ArgumentParser(description="Visualize comic archive optimization results from the ledger.")
    parser.add_argument("--ledger", default=LEDGER_FILE, help=f"Ledger file to read (default: {LEDGER_FILE})")
    parser.add_argument("--html-report", type=str, help="Generate an HTML report instead of displaying plots. Provide filename.")
    args = parser.parse_args(argv)

    console.print("\n[bold green]--- Optimization Ledger Visualizer ---[/bold green]")
    df = load_ledger(args.ledger)
    if df is None or df.empty:
        console.print("[bold red]No data found in the ledger. Exiting.[/bold red]")
        return 1

    # --- HTML Report Generation ---
    if args.html_report:
        console.print(f"Generating HTML report at [cyan]{args.html_report}[/cyan]...")
        html_content = build_html_report(df)
        try:
            with open(args.html_report, 'w', encoding='utf-8') as f:
                f.write(html_content)
            console.print(f"[bold green]Successfully created report: {args.html_report}[/bold green]")
        except IOError as e:
            console.print(f"[red]Error writing HTML file: {e}[/red]")
            return 1

    # --- Interactive Mode ---
    else:
        for table in get_statistics_tables(df):
            console.print(table)

        optimized_df, _ = split_by_status(df)
        plot_summary_pie(status_counts(df))
        if not optimized_df.empty:
            plot_savings_distribution(optimized_df.copy())
            plot_size_vs_savings(optimized_df.copy())
            plot_cumulative_savings(optimized_df.copy())
            plot_size_distribution(optimized_df.copy())
        else:
            console.print("\n[yellow]No optimized archives found to generate saving plots.[/yellow]")

    console.print("\n[bold green]--- Analysis Complete ---[/bold green]")
    return 0

if __name__ == "__main__":
    raise SystemExit(main())
